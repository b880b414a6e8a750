import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth import (
    hash_password,
    password_changed_at,
    protect,
    restrict_to,
    token_response,
    verify_password,
)
from database import Database, get_db, serialize_doc, serialize_list, to_object_id
from errors import InvalidRequestError, NotFoundError, register_error_handlers, success_response
from password_reset import get_reset_mailer, request_password_reset, reset_password
from reviews import ReviewMutations, attach_authors, list_reviews
from schemas import (
    ForgotPassword,
    PasswordReset,
    PasswordUpdate,
    Review,
    ReviewUpdate,
    Role,
    Tour,
    TourUpdate,
    UserCreate,
    UserLogin,
    UserUpdate,
    public_user,
)
from tours import (
    create_tour,
    delete_tour,
    get_tour,
    list_tours,
    tour_distances,
    tour_stats,
    tours_by_month,
    tours_within,
    update_tour,
)

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    db = Database.from_env()
    await db.connect()
    app.state.db = db
    logger.info("Tour Booking API started")
    try:
        yield
    finally:
        await db.close()
        logger.info("Tour Booking API stopped")


app = FastAPI(title="Tour Booking API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


# -------------------------
# Health & basic routes
# -------------------------

@app.get("/")
def read_root():
    return {"message": "Tour Booking API running"}


@app.get("/test")
async def test_database(request: Request):
    response = {
        "backend": "running",
        "database": "not available",
        "database_name": None,
    }
    db = getattr(request.app.state, "db", None)
    if db is not None:
        response["database"] = "connected"
        response["database_name"] = getattr(db, "name", None)
    return response


# -------------------------
# Auth
# -------------------------

auth_router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@auth_router.post("/signup")
async def signup(payload: UserCreate, db=Depends(get_db)):
    hashed, salt = hash_password(payload.password)
    user_doc = {
        "name": payload.name,
        "email": str(payload.email).lower(),
        "role": Role.USER.value,
        "passwordHash": hashed,
        "passwordSalt": salt,
    }
    # unique email index turns a second signup into ConflictError
    user_id = await db.users.insert(user_doc)
    logger.info("Registered user %s", user_id)
    return token_response(user_id, "user registered successfully", status_code=201)


@auth_router.post("/login")
async def login(payload: UserLogin, db=Depends(get_db)):
    user = await db.users.find_one({"email": str(payload.email).lower()})
    if not user or not verify_password(payload.password, user):
        raise InvalidRequestError("incorrect email/password combination")
    return token_response(user["_id"])


@auth_router.post("/forgot-password")
async def forgot_password(
    payload: ForgotPassword,
    request: Request,
    db=Depends(get_db),
    mailer=Depends(get_reset_mailer),
):
    await request_password_reset(db, str(payload.email), str(request.base_url), mailer)
    return success_response(None, "if user with a given email exists, email to reset password has been sent")


@auth_router.post("/reset-password/{token}")
async def reset_password_route(token: str, payload: PasswordReset, db=Depends(get_db)):
    await reset_password(db, token, payload.newPassword)
    return success_response(None, "password reset successful")


# -------------------------
# Users
# -------------------------

users_router = APIRouter(prefix="/api/v1/users", tags=["users"])


@users_router.post("/update-password")
async def update_password(payload: PasswordUpdate, user: dict = Depends(protect), db=Depends(get_db)):
    if not verify_password(payload.currentPassword, user):
        raise InvalidRequestError("current password is incorrect")
    hashed, salt = hash_password(payload.newPassword)
    await db.users.update_by_id(
        user["_id"],
        {"passwordHash": hashed, "passwordSalt": salt, "passwordChangedAt": password_changed_at()},
    )
    return token_response(user["_id"], "password updated successfully")


@users_router.get("/me")
async def get_me(user: dict = Depends(restrict_to(Role.USER))):
    return success_response(public_user(user).model_dump(mode="json"))


@users_router.patch("/me")
async def update_me(payload: UserUpdate, user: dict = Depends(restrict_to(Role.USER)), db=Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    if "email" in changes:
        changes["email"] = str(changes["email"]).lower()
    if not changes:
        raise InvalidRequestError("no fields to update")
    await db.users.update_by_id(user["_id"], changes)
    updated = await db.users.find_by_id(user["_id"])
    return success_response(public_user(updated).model_dump(mode="json"), "user updated successfully")


@users_router.delete("/me")
async def delete_me(user: dict = Depends(restrict_to(Role.USER)), db=Depends(get_db)):
    await db.users.delete_by_id(user["_id"])
    return success_response(None, "account removed successfully")


# -------------------------
# Tours
# -------------------------

tours_router = APIRouter(prefix="/api/v1/tours", tags=["tours"])


@tours_router.get("")
async def get_all_tours(request: Request, db=Depends(get_db)):
    docs = await list_tours(db, dict(request.query_params))
    return success_response(serialize_list(docs))


@tours_router.post("", status_code=201)
async def create_tour_route(
    tour: Tour,
    user: dict = Depends(restrict_to(Role.ADMIN, Role.LEAD_GUIDE)),
    db=Depends(get_db),
):
    doc = await create_tour(db, tour)
    return success_response(serialize_doc(doc), "document created successfully")


@tours_router.get("/stats")
async def get_tour_stats(db=Depends(get_db)):
    return success_response(serialize_list(await tour_stats(db)))


@tours_router.get("/stats-by-month/{year}")
async def get_tours_by_month(year: int, db=Depends(get_db)):
    return success_response(serialize_list(await tours_by_month(db, year)))


@tours_router.get("/within/{distance}/center/{latlng}/unit/{unit}")
async def get_tours_within(distance: float, latlng: str, unit: str, request: Request, db=Depends(get_db)):
    docs = await tours_within(db, distance, latlng, unit, dict(request.query_params))
    return success_response(serialize_list(docs))


@tours_router.get("/distances/center/{latlng}/unit/{unit}")
async def get_tour_distances(latlng: str, unit: str, db=Depends(get_db)):
    return success_response(serialize_list(await tour_distances(db, latlng, unit)))


@tours_router.get("/{tour_id}")
async def get_tour_route(tour_id: str, user: dict = Depends(protect), db=Depends(get_db)):
    return success_response(serialize_doc(await get_tour(db, tour_id)))


@tours_router.patch("/{tour_id}")
async def update_tour_route(
    tour_id: str,
    payload: TourUpdate,
    user: dict = Depends(restrict_to(Role.ADMIN, Role.LEAD_GUIDE)),
    db=Depends(get_db),
):
    doc = await update_tour(db, tour_id, payload.model_dump(exclude_unset=True))
    return success_response(serialize_doc(doc), "document updated successfully")


@tours_router.delete("/{tour_id}")
async def delete_tour_route(
    tour_id: str,
    user: dict = Depends(restrict_to(Role.ADMIN, Role.LEAD_GUIDE)),
    db=Depends(get_db),
):
    await delete_tour(db, tour_id)
    return success_response(None, "document removed successfully")


# -------------------------
# Reviews
# -------------------------

reviews_router = APIRouter(prefix="/api/v1", tags=["reviews"])


async def _create_review(db, payload: Review, user: dict, tour_id: Optional[str] = None) -> JSONResponse:
    data = payload.model_dump()
    if tour_id is not None:
        data["tour"] = tour_id
    created = await ReviewMutations(db).create(data, user)
    await attach_authors(db, [created])
    return JSONResponse(
        status_code=201,
        content=success_response(serialize_doc(created), "document created successfully"),
    )


@reviews_router.get("/tours/{tour_id}/reviews")
async def get_tour_reviews(tour_id: str, request: Request, user: dict = Depends(protect), db=Depends(get_db)):
    docs = await list_reviews(db, dict(request.query_params), tour_id=tour_id)
    return success_response(serialize_list(docs))


@reviews_router.post("/tours/{tour_id}/reviews")
async def create_tour_review(
    tour_id: str,
    payload: Review,
    user: dict = Depends(restrict_to(Role.USER)),
    db=Depends(get_db),
):
    return await _create_review(db, payload, user, tour_id)


@reviews_router.get("/reviews")
async def get_all_reviews(request: Request, user: dict = Depends(protect), db=Depends(get_db)):
    docs = await list_reviews(db, dict(request.query_params))
    return success_response(serialize_list(docs))


@reviews_router.post("/reviews")
async def create_review(payload: Review, user: dict = Depends(restrict_to(Role.USER)), db=Depends(get_db)):
    return await _create_review(db, payload, user)


@reviews_router.get("/reviews/{review_id}")
async def get_review(review_id: str, user: dict = Depends(protect), db=Depends(get_db)):
    review = await db.reviews.find_by_id(to_object_id(review_id))
    if review is None:
        raise NotFoundError(f"review with id={review_id} does not exist")
    await attach_authors(db, [review])
    return success_response(serialize_doc(review))


@reviews_router.patch("/reviews/{review_id}")
async def update_review(
    review_id: str,
    payload: ReviewUpdate,
    user: dict = Depends(restrict_to(Role.USER)),
    db=Depends(get_db),
):
    updated = await ReviewMutations(db).update(review_id, payload.model_dump(exclude_unset=True), actor=user)
    return success_response(serialize_doc(updated), "document updated successfully")


@reviews_router.delete("/reviews/{review_id}")
async def delete_review(
    review_id: str,
    user: dict = Depends(restrict_to(Role.USER, Role.ADMIN)),
    db=Depends(get_db),
):
    await ReviewMutations(db).delete(review_id, actor=user)
    return success_response(None, "document removed successfully")


app.include_router(auth_router)
app.include_router(users_router)
app.include_router(tours_router)
app.include_router(reviews_router)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
