import statistics

import pytest

import ratings
from ratings import recompute_tour_ratings, refresh_tour_ratings


@pytest.mark.asyncio
@pytest.mark.parametrize("scores", [[], [5], [1, 2], [4, 5, 3, 1], [5, 4, 4, 4, 2, 3, 1]])
async def test_recompute_matches_count_and_mean(db, make_tour, make_user, make_review, scores):
    tour = make_tour()
    for score in scores:
        make_review(tour, make_user(), score)

    stats = await recompute_tour_ratings(db, tour["_id"])

    stored = await db.tours.find_by_id(tour["_id"])
    assert stored["ratingsQuantity"] == len(scores)
    expected_avg = statistics.mean(scores) if scores else 0
    assert stored["ratingsAverage"] == pytest.approx(expected_avg)
    assert stats == {"ratingsQuantity": stored["ratingsQuantity"], "ratingsAverage": stored["ratingsAverage"]}


@pytest.mark.asyncio
async def test_recompute_is_idempotent(db, make_tour, make_user, make_review):
    tour = make_tour()
    make_review(tour, make_user(), 4)
    make_review(tour, make_user(), 1)

    first = await recompute_tour_ratings(db, tour["_id"])
    second = await recompute_tour_ratings(db, tour["_id"])

    assert first == second == {"ratingsQuantity": 2, "ratingsAverage": 2.5}


@pytest.mark.asyncio
async def test_recompute_ignores_other_tours_reviews(db, make_tour, make_user, make_review):
    tour, other = make_tour(), make_tour()
    user = make_user()
    make_review(tour, user, 5)
    make_review(other, user, 1)
    make_review(other, make_user(), 2)

    await recompute_tour_ratings(db, tour["_id"])

    stored = await db.tours.find_by_id(tour["_id"])
    assert (stored["ratingsQuantity"], stored["ratingsAverage"]) == (1, 5)
    untouched = await db.tours.find_by_id(other["_id"])
    assert untouched["ratingsQuantity"] == 0


@pytest.mark.asyncio
async def test_recompute_resets_stale_values_when_no_reviews(db, make_tour):
    tour = make_tour(ratingsAverage=4.2, ratingsQuantity=9)

    await recompute_tour_ratings(db, tour["_id"])

    stored = await db.tours.find_by_id(tour["_id"])
    assert (stored["ratingsQuantity"], stored["ratingsAverage"]) == (0, 0)


@pytest.mark.asyncio
async def test_refresh_swallows_failures_after_retrying(db, make_tour, monkeypatch, caplog):
    tour = make_tour()
    calls = []

    async def broken(match, group_key, reducers):
        calls.append(match)
        raise RuntimeError("connection reset")

    monkeypatch.setattr(db.reviews, "aggregate_group", broken)

    assert await refresh_tour_ratings(db, tour["_id"]) is False
    assert len(calls) == ratings.RECOMPUTE_ATTEMPTS
    assert "left stale" in caplog.text


@pytest.mark.asyncio
async def test_refresh_recovers_on_retry(db, make_tour, make_user, make_review, monkeypatch):
    tour = make_tour()
    make_review(tour, make_user(), 3)
    real = db.reviews.aggregate_group
    failures = [RuntimeError("primary stepped down")]

    async def flaky(match, group_key, reducers):
        if failures:
            raise failures.pop()
        return await real(match, group_key, reducers)

    monkeypatch.setattr(db.reviews, "aggregate_group", flaky)

    assert await refresh_tour_ratings(db, tour["_id"]) is True
    stored = await db.tours.find_by_id(tour["_id"])
    assert stored["ratingsQuantity"] == 1
