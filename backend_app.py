from __future__ import annotations
import os
import logging
import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, List, Any, Dict, Mapping

import requests
import stripe
from fastapi.middleware.cors import CORSMiddleware

from fastapi import (
    FastAPI,
    HTTPException,
    Depends,
    Header,
    Query,
    Request as FastAPIRequest,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    create_engine, Column, Integer, String, Text, DateTime, Boolean,
    ForeignKey, select, update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

# =====================================
# Config
# =====================================
# SQLite database lives in the container's /data directory unless DB_URL
# points somewhere else (tests use a temporary file).
DB_URL = os.getenv("DB_URL", "sqlite:////data/db.sqlite")

# Authentication token for operator endpoints (pricing, spots, review status,
# notification dispatch).
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "change-me")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "eur")
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10"))

# Fallback origin for checkout redirect URLs when the browser sends none.
PUBLIC_SITE_URL = os.getenv("PUBLIC_SITE_URL", "http://localhost:5173")

# Hosted auth endpoint resolving a bearer token to ``{"id", "email"}``.
AUTH_USER_URL = os.getenv("AUTH_USER_URL")
AUTH_API_KEY = os.getenv("AUTH_API_KEY")
AUTH_TIMEOUT_SECONDS = float(os.getenv("AUTH_TIMEOUT_SECONDS", "5"))

BID_MIN_CENTS = int(os.getenv("BID_MIN_CENTS", "50"))
BID_MAX_CENTS = int(os.getenv("BID_MAX_CENTS", "100000"))

DEFAULT_BID_INCREMENT_PERCENT = 10
LEDGER_RETRY_ATTEMPTS = 3

CONFIG_SKIP_LINE = "skip_line"
CONFIG_SUBMISSION = "submission"
CONFIG_BID_INCREMENT = "bid_increment"
PRICING_CONFIG_TYPES = (CONFIG_SKIP_LINE, CONFIG_SUBMISSION, CONFIG_BID_INCREMENT)

PRICING_DEFAULTS: Dict[str, Dict[str, Any]] = {
    CONFIG_SKIP_LINE: {"min_amount_cents": 500, "max_amount_cents": 10000, "step_cents": 50},
    CONFIG_SUBMISSION: {"min_amount_cents": 50, "max_amount_cents": 10000, "step_cents": 50},
    CONFIG_BID_INCREMENT: {
        "min_amount_cents": 0,
        "max_amount_cents": 0,
        "step_cents": 0,
        "percentage": DEFAULT_BID_INCREMENT_PERCENT,
    },
}

SUBMISSION_STATUSES = ("pending", "reviewing", "reviewed")
QUEUE_STATUSES = ("pending", "reviewing")

API_VERSION = "0.1.0"

logger = logging.getLogger(__name__)


def _ensure_sqlite_directory(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return
    database = parsed.database
    if not database or database == ":memory:":
        return
    directory = os.path.dirname(os.path.abspath(database))
    os.makedirs(directory, exist_ok=True)


_ensure_sqlite_directory(DB_URL)

engine = create_engine(DB_URL, connect_args={"check_same_thread": False} if DB_URL.startswith("sqlite") else {})
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> str:
    return str(uuid.uuid4())


# =====================================
# Models
# =====================================
class PricingConfig(Base):
    __tablename__ = "pricing_config"
    id = Column(Integer, primary_key=True)
    config_type = Column(String, unique=True, nullable=False)  # skip_line, submission, bid_increment
    min_amount_cents = Column(Integer, nullable=False, default=0)
    max_amount_cents = Column(Integer, nullable=False, default=0)
    step_cents = Column(Integer, nullable=False, default=0)
    percentage = Column(Integer, nullable=True)  # bid_increment only
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class Submission(Base):
    __tablename__ = "submissions"
    id = Column(String(36), primary_key=True, default=_new_uuid)
    song_url = Column(Text, nullable=False)
    platform = Column(String, nullable=False, default="other")
    artist_name = Column(String, nullable=False, default="Unknown Artist")
    song_title = Column(String, nullable=False, default="Untitled")
    message = Column(Text)
    email = Column(String)
    user_id = Column(String)
    audio_file_url = Column(Text)
    amount_paid_cents = Column(Integer, nullable=False, default=0)
    is_priority = Column(Boolean, nullable=False, default=False)
    boost_amount_cents = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending", index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class PreStreamSpot(Base):
    __tablename__ = "pre_stream_spots"
    id = Column(String(36), primary_key=True, default=_new_uuid)
    spot_number = Column(Integer, unique=True, nullable=False)
    price_cents = Column(Integer, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    purchased_by = Column(String)
    purchased_at = Column(DateTime(timezone=True))
    submission_id = Column(String(36), ForeignKey("submissions.id", ondelete="SET NULL"))


class SubmissionBid(Base):
    __tablename__ = "submission_bids"
    id = Column(Integer, primary_key=True)
    submission_id = Column(
        String(36),
        ForeignKey("submissions.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    user_id = Column(String)
    email = Column(String, nullable=False)
    bid_amount_cents = Column(Integer, nullable=False)  # latest contribution
    total_paid_cents = Column(Integer, nullable=False)  # cumulative, never decreases
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class BidNotification(Base):
    __tablename__ = "bid_notifications"
    id = Column(Integer, primary_key=True)
    submission_id = Column(String(36), ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False)
    email = Column(String, nullable=False)
    notification_type = Column(String, nullable=False, default="outbid")
    offer_amount_cents = Column(Integer)
    trigger_session_id = Column(String)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    email_sent_at = Column(DateTime(timezone=True))


class PaymentRecord(Base):
    """Checkout sessions whose effect has been applied; keyed by session id."""

    __tablename__ = "payment_records"
    id = Column(Integer, primary_key=True)
    session_id = Column(String, unique=True, nullable=False)
    kind = Column(String, nullable=False)  # priority, spot, bid, submission
    submission_id = Column(String(36), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


# =====================================
# DB bootstrap
# =====================================
Base.metadata.create_all(bind=engine)


def seed_default_pricing() -> None:
    """Insert the default pricing rows that are missing.

    Dependencies: Opens its own ``SessionLocal`` session.
    Code customers: Runs at import so quotes and checkout validation always
    find a row for every config type.
    Used variables/origin: ``PRICING_DEFAULTS`` supplies the initial amounts;
    existing rows are never touched.
    """

    db = SessionLocal()
    try:
        existing = {row.config_type for row in db.query(PricingConfig).all()}
        missing = [config_type for config_type in PRICING_CONFIG_TYPES if config_type not in existing]
        for config_type in missing:
            db.add(PricingConfig(config_type=config_type, is_active=True, **PRICING_DEFAULTS[config_type]))
        if missing:
            try:
                db.commit()
            except IntegrityError:
                # another worker seeded concurrently
                db.rollback()
    finally:
        db.close()


# =====================================
# Schemas
# =====================================
class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SongFieldsIn(_CamelModel):
    song_url: Optional[str] = Field(None, alias="songUrl", max_length=2000)
    artist_name: Optional[str] = Field(None, alias="artistName", max_length=200)
    song_title: Optional[str] = Field(None, alias="songTitle", max_length=200)
    message: Optional[str] = Field(None, max_length=1000)
    email: Optional[str] = Field(None, max_length=255)
    platform: Optional[str] = Field(None, max_length=50)
    audio_file_url: Optional[str] = Field(None, alias="audioFileUrl", max_length=500)


class SubmissionIn(SongFieldsIn):
    pass


class PriorityPaymentIn(SongFieldsIn):
    amount: float


class SubmissionPaymentIn(SongFieldsIn):
    amount: float


class SpotPaymentIn(SongFieldsIn):
    spot_id: Optional[str] = Field(None, alias="spotId")
    spot_number: Optional[int] = Field(None, alias="spotNumber")
    price_cents: Optional[int] = Field(None, alias="priceCents")


class BidPaymentIn(_CamelModel):
    submission_id: str = Field(alias="submissionId")
    bid_amount: float = Field(alias="bidAmount")
    email: str = Field(max_length=255)


class VerifyPaymentIn(_CamelModel):
    session_id: str = Field(alias="sessionId", min_length=1, max_length=500)


class VerifySpotPaymentIn(VerifyPaymentIn):
    spot_id: Optional[str] = Field(None, alias="spotId")


class PricingConfigUpdate(_CamelModel):
    min_amount_cents: Optional[int] = Field(None, alias="minAmountCents")
    max_amount_cents: Optional[int] = Field(None, alias="maxAmountCents")
    step_cents: Optional[int] = Field(None, alias="stepCents")
    percentage: Optional[int] = None
    is_active: Optional[bool] = Field(None, alias="isActive")


class SpotCreate(_CamelModel):
    spot_number: int = Field(alias="spotNumber", ge=1)
    price_cents: int = Field(alias="priceCents", ge=0)


class SubmissionStatusUpdate(_CamelModel):
    status: str


# =====================================
# Errors
# =====================================
class EngineError(Exception):
    """Base class for failures surfaced to callers as ``{"error": message}``."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(EngineError):
    status_code = 400


class InvalidAmount(InvalidInput):
    pass


class AmountTooLow(EngineError):
    status_code = 400


class NotFound(EngineError):
    status_code = 404


class SpotUnavailable(EngineError):
    status_code = 409


class PaymentIncomplete(EngineError):
    status_code = 402


class UpstreamFailure(EngineError):
    status_code = 502


def _support_message(session_id: str) -> str:
    return (
        "Your payment was received but we could not finish processing it. "
        f"Please contact support with reference {session_id}."
    )


# =====================================
# Payment provider
# =====================================
@dataclass
class CheckoutSession:
    id: str
    url: Optional[str] = None
    payment_status: str = "unpaid"
    metadata: Dict[str, str] = field(default_factory=dict)
    amount_total: Optional[int] = None


def _stripe_object_to_dict(obj: Any) -> Dict[str, str]:
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    raw = to_dict() if callable(to_dict) else dict(obj)
    return {str(key): "" if value is None else str(value) for key, value in raw.items()}


class PaymentProvider:
    """Thin wrapper over Stripe Checkout: create a session, retrieve a session."""

    def __init__(self, api_key: Optional[str], *, currency: str, timeout: float) -> None:
        self.api_key = api_key
        self.currency = currency
        self.timeout = timeout
        self._http_client: Optional[Any] = None

    def _client_kwargs(self) -> Dict[str, Any]:
        if not self.api_key:
            logger.error("Stripe API key is missing in configuration")
            raise UpstreamFailure("payment provider is not configured")
        if self._http_client is None:
            self._http_client = stripe.RequestsClient(timeout=self.timeout)
            stripe.default_http_client = self._http_client
        return {"api_key": self.api_key}

    @staticmethod
    def _to_session(session: Any) -> CheckoutSession:
        return CheckoutSession(
            id=session.id,
            url=getattr(session, "url", None),
            payment_status=getattr(session, "payment_status", None) or "unpaid",
            metadata=_stripe_object_to_dict(getattr(session, "metadata", None)),
            amount_total=getattr(session, "amount_total", None),
        )

    def create_checkout_session(
        self,
        *,
        name: str,
        description: str,
        amount_cents: int,
        metadata: Mapping[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        kwargs = self._client_kwargs()
        logger.info(
            "Creating Stripe Checkout Session",
            extra={"amount_cents": amount_cents, "payment_type": metadata.get("type")},
        )
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                customer_email=customer_email or None,
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {"name": name, "description": description},
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=dict(metadata),
                **kwargs,
            )
        except stripe.AuthenticationError as exc:
            logger.exception("Stripe authentication error")
            raise UpstreamFailure("payment provider authentication failed") from exc
        except stripe.APIConnectionError as exc:
            logger.exception("Stripe API connection error")
            raise UpstreamFailure("payment provider is unreachable, please retry") from exc
        except stripe.StripeError as exc:
            logger.exception("Stripe error creating checkout session")
            raise UpstreamFailure("could not create checkout session") from exc
        return self._to_session(session)

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        kwargs = self._client_kwargs()
        try:
            session = stripe.checkout.Session.retrieve(session_id, **kwargs)
        except stripe.InvalidRequestError as exc:
            logger.warning("Stripe rejected session lookup for %s: %s", session_id, exc)
            raise InvalidInput("unknown checkout session") from exc
        except stripe.APIConnectionError as exc:
            logger.exception("Stripe API connection error")
            raise UpstreamFailure("payment provider is unreachable, please retry") from exc
        except stripe.StripeError as exc:
            logger.exception("Stripe error retrieving checkout session %s", session_id)
            raise UpstreamFailure("could not retrieve checkout session") from exc
        return self._to_session(session)


payments = PaymentProvider(STRIPE_SECRET_KEY, currency=PAYMENT_CURRENCY, timeout=PAYMENT_TIMEOUT_SECONDS)


# =====================================
# Auth collaborator
# =====================================
@dataclass
class AuthUser:
    id: str
    email: Optional[str] = None


def resolve_bearer_user(authorization: Optional[str]) -> Optional[AuthUser]:
    """Resolve an optional bearer token to the hosted auth service's user.

    Dependencies: ``requests`` against ``AUTH_USER_URL`` with a bounded timeout.
    Code customers: Checkout creation endpoints, which accept anonymous
    email-only buyers and attach the user id/email when a token is valid.
    Used variables/origin: ``authorization`` is the raw header; a missing,
    rejected or unreachable lookup yields ``None`` instead of an error.
    """

    if not authorization or not authorization.startswith("Bearer "):
        return None
    if not AUTH_USER_URL:
        return None
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        return None
    headers = {"Authorization": f"Bearer {token}"}
    if AUTH_API_KEY:
        headers["apikey"] = AUTH_API_KEY
    try:
        resp = requests.get(AUTH_USER_URL, headers=headers, timeout=AUTH_TIMEOUT_SECONDS)
    except requests.RequestException:
        logger.warning("Auth lookup failed; continuing as anonymous", exc_info=True)
        return None
    if resp.status_code != 200:
        return None
    try:
        data = resp.json()
    except ValueError:
        logger.warning("Auth lookup returned invalid JSON; continuing as anonymous")
        return None
    user_id = data.get("id") if isinstance(data, dict) else None
    if not user_id:
        return None
    return AuthUser(id=str(user_id), email=data.get("email") or None)


# =====================================
# FastAPI app and deps
# =====================================
app = FastAPI(title="Song Request Queue Backend", version=API_VERSION)

DEFAULT_CORS_ALLOW_ORIGIN_REGEX = r"https?://.*"


def _parse_cors_origins(raw: str) -> list[str]:
    """Return a list of origins from an environment variable value.

    Accepts comma and/or whitespace separated values and drops trailing
    slashes, since browsers never send one in the ``Origin`` header.
    """

    if not raw:
        return []

    origins: list[str] = []
    for part in re.split(r"[\s,]+", raw):
        origin = part.strip().rstrip("/")
        if origin:
            origins.append(origin)
    return origins


def _cors_settings_from_env(env: Mapping[str, str]) -> tuple[list[str], Optional[str]]:
    origins = _parse_cors_origins(env.get("CORS_ALLOW_ORIGINS", ""))
    allow_origins: list[str] = []
    regex_fragments: list[str] = []
    for origin in origins:
        if "*" in origin:
            # ``https://*.example.com`` matches one host label, not the apex
            regex_fragments.append(re.escape(origin).replace(r"\*", r"[^/]+"))
        else:
            allow_origins.append(origin)

    configured_regex = env.get("CORS_ALLOW_ORIGIN_REGEX", "")
    if configured_regex:
        regex_fragments.append(configured_regex)
    elif not allow_origins and not regex_fragments:
        regex_fragments.append(DEFAULT_CORS_ALLOW_ORIGIN_REGEX)

    allow_origin_regex = None
    if regex_fragments:
        allow_origin_regex = f"^(?:{'|'.join(regex_fragments)})$"
    return allow_origins, allow_origin_regex


allow_origins, allow_origin_regex = _cors_settings_from_env(os.environ)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: FastAPIRequest, exc: EngineError) -> JSONResponse:
    logger.warning(
        "%s %s failed: %s",
        request.method,
        request.url.path,
        exc.message,
        extra={"error_type": type(exc).__name__},
    )
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_request: FastAPIRequest, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: FastAPIRequest, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", ())[1:])
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse({"error": "Invalid input: " + "; ".join(parts)}, status_code=400)


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_payments() -> PaymentProvider:
    return payments


def get_optional_user(authorization: Optional[str] = Header(None)) -> Optional[AuthUser]:
    return resolve_bearer_user(authorization)


def require_token(x_admin_token: Optional[str] = Header(None)) -> None:
    if x_admin_token and secrets.compare_digest(x_admin_token, ADMIN_TOKEN):
        return
    raise HTTPException(status_code=401, detail="invalid admin token")


def _checkout_origin(request: FastAPIRequest) -> str:
    origin = (request.headers.get("origin") or "").strip().rstrip("/")
    return origin or PUBLIC_SITE_URL.rstrip("/")


# =====================================
# Helpers
# =====================================
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _to_cents(amount: Any, *, field_name: str = "amount") -> int:
    """Convert a currency-unit amount to integer cents with half-up rounding."""

    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidInput(f"{field_name} must be a number") from exc
    if not value.is_finite():
        raise InvalidInput(f"{field_name} must be a number")
    cents = (value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if cents < 0:
        raise InvalidInput(f"{field_name} must not be negative")
    return int(cents)


def _format_money(cents: int) -> str:
    return f"{cents / 100:.2f}"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def _valid_email(value: Optional[str]) -> bool:
    return bool(value and _EMAIL_RE.match(value))


def _require_metadata(metadata: Mapping[str, str], key: str) -> str:
    value = (metadata.get(key) or "").strip()
    if not value:
        raise InvalidInput(f"Invalid session metadata: {key} missing")
    return value


def _metadata_int(metadata: Mapping[str, str], key: str, *, default: Optional[int] = None) -> int:
    raw = (metadata.get(key) or "").strip()
    if not raw:
        if default is None:
            raise InvalidInput(f"Invalid session metadata: {key} missing")
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise InvalidInput(f"Invalid session metadata: {key} is not an integer") from exc


def _song_metadata(song: SongFieldsIn, *, email: Optional[str], user: Optional[AuthUser]) -> Dict[str, str]:
    return {
        "song_url": _clean(song.song_url) or "",
        "artist_name": _clean(song.artist_name) or "Unknown Artist",
        "song_title": _clean(song.song_title) or "Untitled",
        "message": _clean(song.message) or "",
        "email": email or "",
        "user_id": user.id if user else "",
        "platform": _clean(song.platform) or "other",
        "audio_file_url": _clean(song.audio_file_url) or "",
    }


def _checkout_email(payload_email: Optional[str], user: Optional[AuthUser]) -> Optional[str]:
    if user and user.email:
        return user.email
    email = _clean(payload_email)
    if email and not _valid_email(email):
        raise InvalidInput("email is not a valid address")
    return email


def _require_song_url(song: SongFieldsIn) -> None:
    if not _clean(song.song_url):
        raise InvalidInput("Song URL is required")


def _payment_record(db: Session, session_id: str) -> Optional[PaymentRecord]:
    return db.query(PaymentRecord).filter(PaymentRecord.session_id == session_id).one_or_none()


def _serialize_submission(submission: Submission, *, position: Optional[int] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": submission.id,
        "songUrl": submission.song_url,
        "platform": submission.platform,
        "artistName": submission.artist_name,
        "songTitle": submission.song_title,
        "message": submission.message,
        "email": submission.email,
        "audioFileUrl": submission.audio_file_url,
        "amountPaidCents": submission.amount_paid_cents or 0,
        "isPriority": bool(submission.is_priority),
        "boostAmountCents": submission.boost_amount_cents or 0,
        "status": submission.status,
        "createdAt": submission.created_at.isoformat() if submission.created_at else None,
    }
    if position is not None:
        payload["queuePosition"] = position
    return payload


def _serialize_pricing(config: PricingConfig) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "configType": config.config_type,
        "minAmountCents": config.min_amount_cents,
        "maxAmountCents": config.max_amount_cents,
        "stepCents": config.step_cents,
        "isActive": bool(config.is_active),
    }
    if config.config_type == CONFIG_BID_INCREMENT:
        payload["percentage"] = config.percentage if config.percentage is not None else DEFAULT_BID_INCREMENT_PERCENT
    return payload


def _serialize_spot(spot: PreStreamSpot) -> Dict[str, Any]:
    return {
        "id": spot.id,
        "spotNumber": spot.spot_number,
        "priceCents": spot.price_cents,
        "isAvailable": bool(spot.is_available),
        "purchasedAt": spot.purchased_at.isoformat() if spot.purchased_at else None,
        "submissionId": spot.submission_id,
    }


def _serialize_notification(notification: BidNotification, submission: Optional[Submission] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": notification.id,
        "submissionId": notification.submission_id,
        "email": notification.email,
        "notificationType": notification.notification_type,
        "offerAmountCents": notification.offer_amount_cents,
        "createdAt": notification.created_at.isoformat() if notification.created_at else None,
        "emailSent": notification.email_sent_at is not None,
    }
    if submission is not None:
        payload["songTitle"] = submission.song_title
        payload["artistName"] = submission.artist_name
    return payload


# =====================================
# Pricing Policy
# =====================================
def get_pricing_config(db: Session, config_type: str) -> PricingConfig:
    config = db.query(PricingConfig).filter(PricingConfig.config_type == config_type).one_or_none()
    if not config:
        raise NotFound(f"Pricing configuration '{config_type}' not found")
    return config


def priority_floor_cents(db: Session) -> int:
    """Return the minimum price of a priority (skip-the-line) purchase in cents.

    Dependencies: ``get_pricing_config`` for the ``skip_line`` row.
    Code customers: Priority checkout creation re-reads this on every call so
    a client-declared amount is never trusted.
    Used variables/origin: ``min_amount_cents`` of the stored row; an inactive
    row disables priority purchases entirely.
    """

    config = get_pricing_config(db, CONFIG_SKIP_LINE)
    if not config.is_active:
        raise InvalidInput("Priority purchases are not currently active")
    return max(config.min_amount_cents or 0, 0)


def bid_increment_percent(db: Session) -> int:
    config = db.query(PricingConfig).filter(PricingConfig.config_type == CONFIG_BID_INCREMENT).one_or_none()
    if not config or config.percentage is None:
        return DEFAULT_BID_INCREMENT_PERCENT
    return config.percentage


def update_pricing_config(db: Session, config_type: str, payload: PricingConfigUpdate) -> PricingConfig:
    if config_type not in PRICING_CONFIG_TYPES:
        raise NotFound(f"Pricing configuration '{config_type}' not found")
    config = get_pricing_config(db, config_type)

    for name in ("min_amount_cents", "max_amount_cents", "step_cents"):
        value = getattr(payload, name)
        if value is None:
            continue
        if value < 0:
            raise InvalidInput(f"{name} must not be negative")
        setattr(config, name, value)
    if payload.percentage is not None:
        if config_type != CONFIG_BID_INCREMENT:
            raise InvalidInput("percentage only applies to bid_increment")
        if not 5 <= payload.percentage <= 100:
            raise InvalidInput("percentage must be between 5 and 100")
        config.percentage = payload.percentage
    if payload.is_active is not None:
        config.is_active = payload.is_active
    if config_type != CONFIG_BID_INCREMENT and config.min_amount_cents > config.max_amount_cents:
        raise InvalidInput("minAmountCents must not exceed maxAmountCents")

    db.commit()
    db.refresh(config)
    logger.info("Pricing config %s updated", config_type, extra={"pricing": _serialize_pricing(config)})
    return config


# =====================================
# Submissions & Queue
# =====================================
def create_submission(db: Session, payload: SubmissionIn, user: Optional[AuthUser]) -> Submission:
    _require_song_url(payload)
    metadata = _song_metadata(payload, email=_checkout_email(payload.email, user), user=user)
    submission = _submission_from_metadata(metadata, is_priority=False, amount_cents=0)
    db.add(submission)
    db.commit()
    db.refresh(submission)
    logger.info("Submission created", extra={"submission_id": submission.id})
    return submission


def list_queue(db: Session) -> List[Submission]:
    """Return the reviewable queue in play order.

    Priority entries come first; among them the larger bid total, then the
    larger purchase amount, then the earlier submission wins.
    """

    return (
        db.query(Submission)
        .filter(Submission.status.in_(QUEUE_STATUSES))
        .order_by(
            Submission.is_priority.desc(),
            Submission.boost_amount_cents.desc(),
            Submission.amount_paid_cents.desc(),
            Submission.created_at.asc(),
            Submission.id.asc(),
        )
        .all()
    )


def set_submission_status(db: Session, submission_id: str, status: str) -> Submission:
    if status not in SUBMISSION_STATUSES:
        raise InvalidInput(f"status must be one of {', '.join(SUBMISSION_STATUSES)}")
    submission = db.get(Submission, submission_id)
    if not submission:
        raise NotFound("Submission not found")
    submission.status = status
    db.commit()
    db.refresh(submission)
    return submission


def _submission_from_metadata(metadata: Mapping[str, str], *, is_priority: bool, amount_cents: int) -> Submission:
    return Submission(
        song_url=metadata.get("song_url") or "",
        platform=metadata.get("platform") or "other",
        artist_name=metadata.get("artist_name") or "Unknown Artist",
        song_title=metadata.get("song_title") or "Untitled",
        message=metadata.get("message") or None,
        email=metadata.get("email") or None,
        user_id=metadata.get("user_id") or None,
        audio_file_url=metadata.get("audio_file_url") or None,
        amount_paid_cents=amount_cents,
        is_priority=is_priority,
        boost_amount_cents=0,
        status="pending",
    )


# =====================================
# Checkout verification
# =====================================
def retrieve_paid_session(provider: PaymentProvider, session_id: str, *, expected_type: str) -> CheckoutSession:
    """Fetch a checkout session and require it to be paid and of the expected kind.

    Dependencies: ``PaymentProvider.retrieve_session``.
    Code customers: Every verification endpoint; nothing from the original
    request body is used after this point, only the returned metadata.
    Used variables/origin: ``expected_type`` must equal ``metadata["type"]``
    written at checkout creation.
    """

    session = provider.retrieve_session(session_id)
    logger.info(
        "Session retrieved",
        extra={"session_id": session_id, "payment_status": session.payment_status},
    )
    if session.payment_status != "paid":
        raise PaymentIncomplete("Payment not completed")
    if session.metadata.get("type") != expected_type:
        raise InvalidInput("Invalid session type")
    return session


def record_paid_submission(
    db: Session,
    session: CheckoutSession,
    *,
    kind: str,
    is_priority: bool,
    amount_cents: int,
) -> tuple[Submission, bool]:
    """Insert the submission paid for by ``session`` exactly once.

    Dependencies: ``PaymentRecord`` unique session ids; the submission row and
    its record are committed together.
    Code customers: Priority, spot and standard paid submission verification.
    Used variables/origin: Returns ``(submission, created)``; ``created`` is
    False when the session had already been applied.
    """

    record = _payment_record(db, session.id)
    if record:
        existing = db.get(Submission, record.submission_id)
        if existing is None:
            raise NotFound(_support_message(session.id))
        return existing, False

    if not (session.metadata.get("song_url") or "").strip():
        raise InvalidInput("Invalid session metadata: song_url missing")
    submission = _submission_from_metadata(session.metadata, is_priority=is_priority, amount_cents=amount_cents)
    try:
        db.add(submission)
        db.flush()
        db.add(
            PaymentRecord(
                session_id=session.id,
                kind=kind,
                submission_id=submission.id,
                amount_cents=amount_cents,
            )
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        record = _payment_record(db, session.id)
        if record is None:
            logger.exception("Submission insert failed", extra={"session_id": session.id})
            raise UpstreamFailure(_support_message(session.id))
        logger.info("Session already applied concurrently", extra={"session_id": session.id})
        existing = db.get(Submission, record.submission_id)
        if existing is None:
            raise NotFound(_support_message(session.id))
        return existing, False
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Submission insert failed", extra={"session_id": session.id})
        raise UpstreamFailure(_support_message(session.id)) from exc

    db.refresh(submission)
    logger.info(
        "Submission created",
        extra={"session_id": session.id, "submission_id": submission.id, "payment_type": kind},
    )
    return submission, True


# =====================================
# Priority Purchase Flow
# =====================================
def create_priority_checkout(
    db: Session,
    provider: PaymentProvider,
    payload: PriorityPaymentIn,
    user: Optional[AuthUser],
    origin: str,
) -> CheckoutSession:
    _require_song_url(payload)
    amount_cents = _to_cents(payload.amount)
    floor = priority_floor_cents(db)
    if amount_cents < floor:
        raise AmountTooLow(f"Minimum priority payment is {_format_money(floor)}")

    email = _checkout_email(payload.email, user)
    metadata = _song_metadata(payload, email=email, user=user)
    metadata.update({"type": "priority", "amount_cents": str(amount_cents)})
    session = provider.create_checkout_session(
        name=f"Priority Submission: {metadata['song_title']}",
        description=f"Skip the line for \"{metadata['song_title']}\" by {metadata['artist_name']}",
        amount_cents=amount_cents,
        metadata=metadata,
        success_url=f"{origin}/?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{origin}/?payment=cancelled",
        customer_email=email,
    )
    logger.info("Checkout session created", extra={"session_id": session.id, "payment_type": "priority"})
    return session


def verify_priority_payment(db: Session, provider: PaymentProvider, session_id: str) -> Submission:
    session = retrieve_paid_session(provider, session_id, expected_type="priority")
    amount_cents = _metadata_int(session.metadata, "amount_cents", default=session.amount_total or 0)
    submission, _ = record_paid_submission(
        db, session, kind="priority", is_priority=True, amount_cents=amount_cents
    )
    return submission


def create_spot_checkout(
    db: Session,
    provider: PaymentProvider,
    payload: SpotPaymentIn,
    user: Optional[AuthUser],
    origin: str,
) -> CheckoutSession:
    spot_id = _clean(payload.spot_id)
    if not spot_id or not payload.spot_number:
        raise InvalidInput("Invalid spot data")
    _require_song_url(payload)
    email = _checkout_email(payload.email, user)
    if not email:
        raise InvalidInput("Email is required")

    spot = db.get(PreStreamSpot, spot_id)
    if not spot:
        raise NotFound("Spot not found")
    if not spot.is_available:
        raise SpotUnavailable("This spot is no longer available")
    if payload.price_cents is not None and payload.price_cents != spot.price_cents:
        logger.warning(
            "Client price differs from stored spot price; using stored price",
            extra={"spot_id": spot.id, "client_price_cents": payload.price_cents, "price_cents": spot.price_cents},
        )

    metadata = _song_metadata(payload, email=email, user=user)
    metadata.update(
        {
            "type": "spot",
            "spot_id": spot.id,
            "spot_number": str(spot.spot_number),
            "price_cents": str(spot.price_cents),
        }
    )
    session = provider.create_checkout_session(
        name=f"Pre-Stream Spot #{spot.spot_number}",
        description=f"Priority spot #{spot.spot_number} for the next stream",
        amount_cents=spot.price_cents,
        metadata=metadata,
        success_url=f"{origin}/?spot_payment=success&spot_id={spot.id}&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{origin}/?spot_payment=cancelled",
        customer_email=email,
    )
    logger.info("Checkout session created", extra={"session_id": session.id, "payment_type": "spot"})
    return session


def claim_spot(db: Session, spot_id: str, submission_id: str, purchased_by: Optional[str]) -> bool:
    """Atomically flip a spot from available to claimed.

    A single conditional UPDATE guarded by ``is_available``; exactly one of
    several concurrent callers sees a row count of one.
    """

    try:
        result = db.execute(
            update(PreStreamSpot)
            .where(PreStreamSpot.id == spot_id, PreStreamSpot.is_available.is_(True))
            .values(
                is_available=False,
                purchased_by=purchased_by,
                purchased_at=_utcnow(),
                submission_id=submission_id,
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Spot claim write failed", extra={"spot_id": spot_id, "submission_id": submission_id})
        return False
    return result.rowcount == 1


def verify_spot_payment(
    db: Session,
    provider: PaymentProvider,
    session_id: str,
    requested_spot_id: Optional[str] = None,
) -> Dict[str, Any]:
    session = retrieve_paid_session(provider, session_id, expected_type="spot")
    metadata = session.metadata
    spot_id = _require_metadata(metadata, "spot_id")
    if requested_spot_id and requested_spot_id != spot_id:
        logger.warning(
            "Requested spot does not match session; using session metadata",
            extra={"session_id": session_id, "requested_spot_id": requested_spot_id, "spot_id": spot_id},
        )
    spot_number = _metadata_int(metadata, "spot_number", default=0)
    price_cents = _metadata_int(metadata, "price_cents", default=session.amount_total or 0)

    submission, _ = record_paid_submission(
        db, session, kind="spot", is_priority=True, amount_cents=price_cents
    )

    claimed = claim_spot(db, spot_id, submission.id, metadata.get("user_id") or None)
    if not claimed:
        spot = db.get(PreStreamSpot, spot_id)
        if spot is not None:
            db.refresh(spot)
        claimed = spot is not None and spot.submission_id == submission.id
    if claimed:
        logger.info("Spot marked as purchased", extra={"spot_id": spot_id, "submission_id": submission.id})
        message = f"Pre-stream Spot #{spot_number} purchased successfully!"
    else:
        logger.warning(
            "Spot %s was claimed by another buyer after payment",
            spot_id,
            extra={
                "session_id": session_id,
                "spot_id": spot_id,
                "submission_id": submission.id,
                "partial_failure": "spot_claim",
            },
        )
        message = (
            f"Payment received. Spot #{spot_number} was taken by another buyer, "
            "your song has been added to the priority queue."
        )
    return {
        "success": True,
        "message": message,
        "spotNumber": spot_number,
        "spotClaimed": claimed,
        "submissionId": submission.id,
    }


def create_submission_checkout(
    db: Session,
    provider: PaymentProvider,
    payload: SubmissionPaymentIn,
    user: Optional[AuthUser],
    origin: str,
) -> CheckoutSession:
    _require_song_url(payload)
    config = get_pricing_config(db, CONFIG_SUBMISSION)
    if not config.is_active:
        raise InvalidInput("Paid submissions are not currently active")
    amount_cents = _to_cents(payload.amount)
    if amount_cents < config.min_amount_cents:
        raise AmountTooLow(
            f"Amount must be between {_format_money(config.min_amount_cents)} "
            f"and {_format_money(config.max_amount_cents)}"
        )
    if amount_cents > config.max_amount_cents:
        raise InvalidInput(
            f"Amount must be between {_format_money(config.min_amount_cents)} "
            f"and {_format_money(config.max_amount_cents)}"
        )

    email = _checkout_email(payload.email, user)
    metadata = _song_metadata(payload, email=email, user=user)
    metadata["type"] = "submission"
    session = provider.create_checkout_session(
        name="Song Submission",
        description=f"Submit: {metadata['song_title']} by {metadata['artist_name']}",
        amount_cents=amount_cents,
        metadata=metadata,
        success_url=f"{origin}/?submission_payment=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{origin}/?submission_payment=cancelled",
        customer_email=email,
    )
    logger.info("Checkout session created", extra={"session_id": session.id, "payment_type": "submission"})
    return session


def verify_submission_payment(db: Session, provider: PaymentProvider, session_id: str) -> Submission:
    session = retrieve_paid_session(provider, session_id, expected_type="submission")
    submission, _ = record_paid_submission(
        db, session, kind="submission", is_priority=False, amount_cents=session.amount_total or 0
    )
    return submission


# =====================================
# Bid Ledger
# =====================================
@dataclass
class BidOutcome:
    submission_id: str
    bid_amount_cents: int
    total_paid_cents: int
    applied: bool


def create_bid_checkout(
    db: Session,
    provider: PaymentProvider,
    payload: BidPaymentIn,
    user: Optional[AuthUser],
    origin: str,
) -> CheckoutSession:
    try:
        submission_id = str(uuid.UUID(payload.submission_id))
    except ValueError as exc:
        raise InvalidInput("submissionId must be a UUID") from exc
    email = _checkout_email(payload.email, user)
    if not email:
        raise InvalidInput("Email is required")

    bid_amount_cents = _to_cents(payload.bid_amount, field_name="bidAmount")
    if not BID_MIN_CENTS <= bid_amount_cents <= BID_MAX_CENTS:
        raise InvalidAmount(
            f"Bid must be between {_format_money(BID_MIN_CENTS)} and {_format_money(BID_MAX_CENTS)}"
        )

    submission = db.get(Submission, submission_id)
    if not submission:
        raise NotFound("Submission not found")

    session = provider.create_checkout_session(
        name="Queue Position Bid",
        description=f"Bid for: {submission.song_title} by {submission.artist_name}",
        amount_cents=bid_amount_cents,
        metadata={
            "type": "bid",
            "submission_id": submission.id,
            "user_id": user.id if user else "",
            "email": email,
            "bid_amount_cents": str(bid_amount_cents),
        },
        success_url=f"{origin}/my-dashboard?bid_payment=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{origin}/my-dashboard?bid_payment=cancelled",
        customer_email=email,
    )
    logger.info(
        "Checkout session created",
        extra={"session_id": session.id, "payment_type": "bid", "submission_id": submission.id},
    )
    return session


def _ledger_total(db: Session, submission_id: str) -> int:
    total = db.execute(
        select(SubmissionBid.total_paid_cents).where(SubmissionBid.submission_id == submission_id)
    ).scalar_one_or_none()
    return total or 0


def apply_bid_payment(db: Session, session: CheckoutSession) -> BidOutcome:
    """Add a verified bid payment to its submission's ledger row exactly once.

    Dependencies: ``PaymentRecord`` for idempotency, ``SubmissionBid`` and
    ``Submission`` rows in the shared store.
    Code customers: ``verify_bid_payment``; the outbid scan runs only when the
    returned outcome reports ``applied``.
    Used variables/origin: ``submission_id`` and ``bid_amount_cents`` come from
    the verified session metadata only. The running total is incremented in
    SQL so concurrent verifications for the same submission add up; losing a
    first-insert race rolls back and retries the whole step.
    """

    metadata = session.metadata
    submission_id = _require_metadata(metadata, "submission_id")
    amount = _metadata_int(metadata, "bid_amount_cents")
    if amount <= 0:
        raise InvalidInput("Invalid session metadata: bid_amount_cents must be positive")
    email = metadata.get("email") or ""
    user_id = metadata.get("user_id") or None

    for attempt in range(1, LEDGER_RETRY_ATTEMPTS + 1):
        if _payment_record(db, session.id):
            logger.info("Bid session already applied", extra={"session_id": session.id})
            return BidOutcome(submission_id, amount, _ledger_total(db, submission_id), applied=False)
        if db.get(Submission, submission_id) is None:
            raise NotFound(_support_message(session.id))

        try:
            db.add(
                PaymentRecord(
                    session_id=session.id,
                    kind="bid",
                    submission_id=submission_id,
                    amount_cents=amount,
                )
            )
            db.flush()
            result = db.execute(
                update(SubmissionBid)
                .where(SubmissionBid.submission_id == submission_id)
                .values(
                    bid_amount_cents=amount,
                    total_paid_cents=SubmissionBid.total_paid_cents + amount,
                    updated_at=_utcnow(),
                )
            )
            if result.rowcount == 0:
                db.add(
                    SubmissionBid(
                        submission_id=submission_id,
                        user_id=user_id,
                        email=email,
                        bid_amount_cents=amount,
                        total_paid_cents=amount,
                    )
                )
                db.flush()
            new_total = _ledger_total(db, submission_id)
            db.execute(
                update(Submission)
                .where(Submission.id == submission_id)
                .values(is_priority=True, boost_amount_cents=new_total)
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(
                "Bid ledger write conflicted (attempt %s/%s)",
                attempt,
                LEDGER_RETRY_ATTEMPTS,
                extra={"session_id": session.id, "submission_id": submission_id},
            )
            continue
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Bid ledger write failed", extra={"session_id": session.id})
            raise UpstreamFailure(_support_message(session.id)) from exc

        logger.info(
            "Bid applied",
            extra={"session_id": session.id, "submission_id": submission_id, "total_paid_cents": new_total},
        )
        return BidOutcome(submission_id, amount, new_total, applied=True)

    logger.error("Bid ledger write kept conflicting", extra={"session_id": session.id})
    raise UpstreamFailure(_support_message(session.id))


def verify_bid_payment(db: Session, provider: PaymentProvider, session_id: str) -> Dict[str, Any]:
    session = retrieve_paid_session(provider, session_id, expected_type="bid")
    outcome = apply_bid_payment(db, session)
    notified = 0
    if outcome.applied:
        notified = notify_outbid(
            db,
            outcome.submission_id,
            outcome.total_paid_cents,
            trigger_session_id=session.id,
        )
    return {
        "success": True,
        "message": "Your bid has been recorded! Your song moved up in the queue.",
        "submissionId": outcome.submission_id,
        "totalPaidCents": outcome.total_paid_cents,
        "notified": notified,
    }


# =====================================
# Outbid Notifier
# =====================================
def suggested_counter_bid(current_total_cents: int, increment_percent: int) -> int:
    """Return ``ceil(current_total * (1 + percent / 100))`` in exact integer math."""

    return -(-current_total_cents * (100 + increment_percent) // 100)


def notify_outbid(
    db: Session,
    submission_id: str,
    current_total_cents: int,
    *,
    trigger_session_id: Optional[str] = None,
) -> int:
    """Queue an outbid notification for every pending submission now trailing.

    Dependencies: ``bid_increment_percent`` for the live increment, the
    ``SubmissionBid``/``Submission`` join for the scan.
    Code customers: ``verify_bid_payment`` after a bid was applied.
    Used variables/origin: Every trailing bid is notified on every new bid,
    repeats included. Failures are logged and reported as zero; they never
    undo the ledger update that triggered the scan.
    """

    try:
        percent = bid_increment_percent(db)
        offer = suggested_counter_bid(current_total_cents, percent)
        trailing: List[SubmissionBid] = (
            db.query(SubmissionBid)
            .join(Submission, Submission.id == SubmissionBid.submission_id)
            .filter(
                SubmissionBid.submission_id != submission_id,
                Submission.status == "pending",
                SubmissionBid.total_paid_cents < current_total_cents,
            )
            .order_by(SubmissionBid.total_paid_cents.desc())
            .all()
        )
        recipients = [(bid.submission_id, bid.email) for bid in trailing]
        for trailing_submission_id, email in recipients:
            db.add(
                BidNotification(
                    submission_id=trailing_submission_id,
                    email=email,
                    notification_type="outbid",
                    offer_amount_cents=offer,
                    trigger_session_id=trigger_session_id,
                )
            )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Outbid notification scan failed",
            extra={"submission_id": submission_id, "partial_failure": "outbid_notifications"},
        )
        return 0

    for trailing_submission_id, email in recipients:
        logger.info(
            "Outbid notification created",
            extra={"submission_id": trailing_submission_id, "email": email, "offer_amount_cents": offer},
        )
    return len(recipients)


def list_pending_notifications(db: Session, limit: int = 50) -> List[tuple[BidNotification, Optional[Submission]]]:
    rows = (
        db.query(BidNotification, Submission)
        .outerjoin(Submission, Submission.id == BidNotification.submission_id)
        .filter(BidNotification.email_sent_at.is_(None))
        .order_by(BidNotification.created_at.asc(), BidNotification.id.asc())
        .limit(limit)
        .all()
    )
    return [(notification, submission) for notification, submission in rows]


def mark_notification_sent(db: Session, notification_id: int) -> BidNotification:
    notification = db.get(BidNotification, notification_id)
    if not notification:
        raise NotFound("Notification not found")
    if notification.email_sent_at is None:
        notification.email_sent_at = _utcnow()
        db.commit()
        db.refresh(notification)
    return notification


# =====================================
# System
# =====================================
@app.get("/system/meta")
def system_meta():
    return {"version": API_VERSION}


@app.get("/system/health")
def health():
    try:
        with engine.connect() as _:
            pass
        return {"status": "ok"}
    except SQLAlchemyError as e:
        raise HTTPException(500, detail=str(e))


# =====================================
# Pricing
# =====================================
@app.get("/pricing/{config_type}")
def get_pricing(config_type: str, db: Session = Depends(get_db)):
    return _serialize_pricing(get_pricing_config(db, config_type))


@app.put("/pricing/{config_type}", dependencies=[Depends(require_token)])
def put_pricing(config_type: str, payload: PricingConfigUpdate, db: Session = Depends(get_db)):
    return _serialize_pricing(update_pricing_config(db, config_type, payload))


# =====================================
# Submissions & Queue
# =====================================
@app.post("/submissions")
def post_submission(
    payload: SubmissionIn,
    db: Session = Depends(get_db),
    user: Optional[AuthUser] = Depends(get_optional_user),
):
    return _serialize_submission(create_submission(db, payload, user))


@app.get("/submissions/{submission_id}")
def get_submission(submission_id: str, db: Session = Depends(get_db)):
    submission = db.get(Submission, submission_id)
    if not submission:
        raise NotFound("Submission not found")
    payload = _serialize_submission(submission)
    payload["totalBidCents"] = _ledger_total(db, submission_id)
    return payload


@app.put("/submissions/{submission_id}/status", dependencies=[Depends(require_token)])
def put_submission_status(submission_id: str, payload: SubmissionStatusUpdate, db: Session = Depends(get_db)):
    return _serialize_submission(set_submission_status(db, submission_id, payload.status))


@app.get("/queue")
def get_queue(db: Session = Depends(get_db)):
    """Return pending and in-review submissions with their queue positions.

    Dependencies: database session via `get_db`.
    Code consumers: the public queue display and the streamer dashboard.
    Variables: positions are 1-based and follow ``list_queue`` ordering.
    """
    return [
        _serialize_submission(submission, position=index)
        for index, submission in enumerate(list_queue(db), start=1)
    ]


# =====================================
# Payments
# =====================================
@app.post("/payments/priority")
def post_priority_payment(
    payload: PriorityPaymentIn,
    request: FastAPIRequest,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payments),
    user: Optional[AuthUser] = Depends(get_optional_user),
):
    session = create_priority_checkout(db, provider, payload, user, _checkout_origin(request))
    return {"url": session.url, "sessionId": session.id}


@app.post("/payments/priority/verify")
def post_priority_verify(
    payload: VerifyPaymentIn,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payments),
):
    submission = verify_priority_payment(db, provider, payload.session_id)
    return {
        "success": True,
        "message": "Your priority submission has been added to the queue!",
        "submission": _serialize_submission(submission),
    }


@app.post("/payments/bid")
def post_bid_payment(
    payload: BidPaymentIn,
    request: FastAPIRequest,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payments),
    user: Optional[AuthUser] = Depends(get_optional_user),
):
    session = create_bid_checkout(db, provider, payload, user, _checkout_origin(request))
    return {"url": session.url}


@app.post("/payments/bid/verify")
def post_bid_verify(
    payload: VerifyPaymentIn,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payments),
):
    return verify_bid_payment(db, provider, payload.session_id)


@app.post("/payments/spot")
def post_spot_payment(
    payload: SpotPaymentIn,
    request: FastAPIRequest,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payments),
    user: Optional[AuthUser] = Depends(get_optional_user),
):
    session = create_spot_checkout(db, provider, payload, user, _checkout_origin(request))
    return {"url": session.url}


@app.post("/payments/spot/verify")
def post_spot_verify(
    payload: VerifySpotPaymentIn,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payments),
):
    return verify_spot_payment(db, provider, payload.session_id, _clean(payload.spot_id))


@app.post("/payments/submission")
def post_submission_payment(
    payload: SubmissionPaymentIn,
    request: FastAPIRequest,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payments),
    user: Optional[AuthUser] = Depends(get_optional_user),
):
    session = create_submission_checkout(db, provider, payload, user, _checkout_origin(request))
    return {"url": session.url}


@app.post("/payments/submission/verify")
def post_submission_verify(
    payload: VerifyPaymentIn,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payments),
):
    submission = verify_submission_payment(db, provider, payload.session_id)
    return {
        "success": True,
        "message": f"Your song \"{submission.song_title}\" has been submitted!",
        "submissionId": submission.id,
    }


# =====================================
# Pre-stream spots
# =====================================
@app.get("/spots")
def list_spots(include_claimed: bool = Query(False), db: Session = Depends(get_db)):
    query = db.query(PreStreamSpot)
    if not include_claimed:
        query = query.filter(PreStreamSpot.is_available.is_(True))
    return [_serialize_spot(spot) for spot in query.order_by(PreStreamSpot.spot_number.asc()).all()]


@app.post("/spots", dependencies=[Depends(require_token)])
def create_spot(payload: SpotCreate, db: Session = Depends(get_db)):
    spot = PreStreamSpot(spot_number=payload.spot_number, price_cents=payload.price_cents, is_available=True)
    db.add(spot)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise InvalidInput(f"Spot #{payload.spot_number} already exists") from exc
    db.refresh(spot)
    return _serialize_spot(spot)


# =====================================
# Notifications
# =====================================
@app.get("/notifications")
def list_notifications(email: str = Query(..., min_length=3, max_length=255), db: Session = Depends(get_db)):
    rows = (
        db.query(BidNotification)
        .filter(BidNotification.email == email.strip())
        .order_by(BidNotification.created_at.desc(), BidNotification.id.desc())
        .limit(100)
        .all()
    )
    return [_serialize_notification(row) for row in rows]


@app.get("/notifications/pending", dependencies=[Depends(require_token)])
def pending_notifications(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    return [
        _serialize_notification(notification, submission)
        for notification, submission in list_pending_notifications(db, limit)
    ]


@app.post("/notifications/{notification_id}/sent", dependencies=[Depends(require_token)])
def post_notification_sent(notification_id: int, db: Session = Depends(get_db)):
    mark_notification_sent(db, notification_id)
    return {"success": True}


seed_default_pricing()
