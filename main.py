import logging
import secrets
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx
import jwt
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse, StreamingResponse
from passlib.hash import pbkdf2_sha256
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import settings
from ai_usage import check_ai_usage_limit, get_ai_usage_info, log_ai_usage
from auth import (
    Session as UserSession,
    create_token,
    get_session,
    require_session_or_fail,
    require_session_or_redirect,
)
from database import Base, engine, get_db
from enhance import SECTION_PROMPTS, build_messages
from files import FileAccessError, is_owned_by, serve_file
from llm_client import LLMClient
from models import Resume, User, UserFile
from resume_ai import (
    RESULT_ANALYSIS,
    RESULT_EXTRACTION,
    ResumeAnalysis,
    ResumeExtraction,
    build_analysis_messages,
    build_extraction_messages,
    build_portfolio_messages,
    clean_html,
    extract_pdf_text,
    extraction_to_resume,
    get_cached_result,
    parse_structured,
    save_cached_result,
)
from resumes import ResumeValues, apply_resume_values, new_resume, resume_detail
from storage import BlobStore, build_storage_key, file_extension, storage_key_to_url
from subscription import can_create_resume, get_subscription, is_premium_user, utcnow

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create all tables
Base.metadata.create_all(bind=engine)


# ---------- AUTH Pydantic models ----------
class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = None

class LoginRequest(BaseModel):
    email: str
    password: str

class SetPasswordRequest(BaseModel):
    password: str = Field(min_length=8)

class AuthResponse(BaseModel):
    token: str
    email: str
    user_id: str


# ---------- Resume / file / AI Pydantic models ----------
class CreateResumeRequest(BaseModel):
    title: Optional[str] = None

class UploadUrlRequest(BaseModel):
    file_name: Optional[str] = Field(None, alias="fileName")
    content_type: Optional[str] = Field(None, alias="contentType")
    file_type: Optional[str] = Field(None, alias="fileType")
    file_size: Optional[int] = Field(None, alias="fileSize")

class ConfirmUploadRequest(BaseModel):
    file_id: Optional[str] = Field(None, alias="fileId")
    storage_key: Optional[str] = Field(None, alias="storageKey")
    file_name: Optional[str] = Field(None, alias="fileName")
    file_size: Optional[int] = Field(None, alias="fileSize")
    mime_type: Optional[str] = Field(None, alias="mimeType")

class EnhanceFieldRequest(BaseModel):
    field_type: str = Field(alias="fieldType")
    current_text: str = Field("", alias="currentText")
    context: Dict[str, str] = Field(default_factory=dict)
    max_length: Optional[int] = Field(None, alias="maxLength", gt=0)

class RecreateResumeRequest(BaseModel):
    file_id: str = Field(alias="fileId")

class AnalyzeResumeRequest(BaseModel):
    file_id: str = Field(alias="fileId")
    force_refresh: bool = Field(False, alias="forceRefresh")


# ============================================================
# ===================== APP & LIFECYCLE ======================
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Process-lifetime collaborators, shared read-only across requests
    app.state.blob_store = BlobStore.from_settings()
    try:
        app.state.llm = LLMClient.from_settings()
    except (RuntimeError, ValueError) as e:
        logger.warning("[startup] LLM client disabled: %s", e)
        app.state.llm = None

    yield

    if app.state.llm is not None:
        app.state.llm.close()


app = FastAPI(title="Resume Builder API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["ETag"],
)


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_llm(request: Request) -> LLMClient:
    llm = getattr(request.app.state, "llm", None)
    if llm is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI features are not configured",
        )
    return llm


def _discard_blobs(store: BlobStore, keys: List[str]) -> None:
    """Best-effort delete of objects whose rows are already gone; leftovers are only logged."""
    for key in keys:
        try:
            store.delete(key)
        except Exception:
            logger.exception("[storage] failed to delete %s", key)


@app.get("/health", include_in_schema=False)
def health():
    return {"ok": True}


# ============================================================
# =========================== AUTH ===========================
# ============================================================

def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        token,
        max_age=settings.JWT_TTL_DAYS * 24 * 3600,
        httponly=True,
        samesite="lax",
    )


@app.post("/auth/register", response_model=AuthResponse)
def register(req: RegisterRequest, response: Response, db: Session = Depends(get_db)):
    """
    Register a new local account with email + password.

    Any existing account with this email blocks registration, including a
    Google-only one: its owner adds a password through /auth/password while
    signed in.
    """
    existing = db.query(User).filter(User.email == req.email).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        email=req.email,
        name=req.name,
        password_hash=pbkdf2_sha256.hash(req.password),
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    token = create_token(user.id)
    _set_session_cookie(response, token)
    return AuthResponse(token=token, email=user.email, user_id=user.id)


@app.post("/auth/login", response_model=AuthResponse)
def login(req: LoginRequest, response: Response, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == req.email).first()
    if not user or not user.password_hash:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid credentials",
        )

    if not pbkdf2_sha256.verify(req.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid credentials",
        )

    token = create_token(user.id)
    _set_session_cookie(response, token)
    return AuthResponse(token=token, email=user.email, user_id=user.id)


@app.post("/auth/sign-out")
def sign_out(response: Response):
    response.delete_cookie(settings.SESSION_COOKIE_NAME)
    return {"status": "ok"}


@app.post("/auth/password")
def set_password(
    req: SetPasswordRequest,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
):
    """Attach a password to the signed-in account (e.g. one created through Google)."""
    user = db.query(User).filter(User.id == session.user.id).first()
    if user.password_hash:
        raise HTTPException(status_code=400, detail="Password already set")

    user.password_hash = pbkdf2_sha256.hash(req.password)
    db.commit()
    return {"status": "ok"}


OAUTH_STATE_COOKIE = "oauth_state"
GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")


@app.get("/auth/google/start")
def google_start():
    state = secrets.token_urlsafe(32)
    params = {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "redirect_uri": settings.GOOGLE_REDIRECT_URI,
        "response_type": "code",
        "scope": "openid email profile",
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    url = "https://accounts.google.com/o/oauth2/v2/auth?" + urlencode(params)
    redirect = RedirectResponse(url)
    redirect.set_cookie(OAUTH_STATE_COOKIE, state, max_age=600, httponly=True, samesite="lax")
    return redirect


@app.get("/auth/google/callback")
def google_callback(
    code: str,
    request: Request,
    state: Optional[str] = None,
    db: Session = Depends(get_db),
):
    # The state must round-trip through this browser's cookie (login CSRF)
    expected = request.cookies.get(OAUTH_STATE_COOKIE)
    if not state or not expected or not secrets.compare_digest(state, expected):
        raise HTTPException(status_code=400, detail="Invalid OAuth state")

    # Exchange code for tokens
    token_resp = httpx.post(
        "https://oauth2.googleapis.com/token",
        data={
            "code": code,
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "redirect_uri": settings.GOOGLE_REDIRECT_URI,
            "grant_type": "authorization_code",
        },
    )
    token_resp.raise_for_status()
    id_token = token_resp.json()["id_token"]

    # The ID token came straight from Google's token endpoint over TLS
    google_info = jwt.decode(id_token, options={"verify_signature": False})
    if google_info.get("aud") != settings.GOOGLE_CLIENT_ID or google_info.get("iss") not in GOOGLE_ISSUERS:
        raise HTTPException(status_code=400, detail="Invalid Google ID token")

    google_id = google_info["sub"]
    email = google_info["email"]

    user = db.query(User).filter(User.email == email).first()
    if user:
        if not user.google_id:
            user.google_id = google_id
            db.commit()
            db.refresh(user)
    else:
        user = User(email=email, name=google_info.get("name"), google_id=google_id)
        db.add(user)
        db.commit()
        db.refresh(user)

    app_token = create_token(user.id)

    redirect = RedirectResponse(f"{settings.FRONTEND_BASE_URL}/dashboard")
    _set_session_cookie(redirect, app_token)
    redirect.delete_cookie(OAUTH_STATE_COOKIE)
    return redirect


@app.get("/auth/me")
def get_me(session: UserSession = Depends(require_session_or_fail), db: Session = Depends(get_db)):
    user = db.query(User).filter(User.id == session.user.id).first()
    return {
        "user_id": user.id,
        "email": user.email,
        "name": user.name,
        "has_password": bool(user.password_hash),
        "has_google": bool(user.google_id),
        "premium": is_premium_user(db, user.id),
    }


# ============================================================
# ========================= RESUMES ==========================
# ============================================================

def _resume_to_dict(resume: Resume) -> Dict[str, Any]:
    return {
        "id": resume.id,
        "title": resume.title,
        "description": resume.description,
        "photoUrl": resume.photo_url,
        "colorHex": resume.color_hex,
        "borderStyle": resume.border_style,
        "createdAt": resume.created_at.isoformat() if resume.created_at else None,
        "updatedAt": resume.updated_at.isoformat() if resume.updated_at else None,
    }


def _insert_resume(db: Session, user_id: str, title: Optional[str] = None) -> Resume:
    resume = Resume(user_id=user_id, title=title or "Untitled Resume")
    db.add(resume)
    db.commit()
    db.refresh(resume)
    return resume


def _owned_resume(db: Session, resume_id: str, user_id: str) -> Optional[Resume]:
    return (
        db.query(Resume)
        .filter(Resume.id == resume_id, Resume.user_id == user_id)
        .first()
    )


@app.get("/api/resumes")
def list_resumes(session: UserSession = Depends(require_session_or_fail), db: Session = Depends(get_db)):
    rows = (
        db.query(Resume)
        .filter(Resume.user_id == session.user.id)
        .order_by(Resume.updated_at.desc())
        .all()
    )
    return {"items": [_resume_to_dict(r) for r in rows]}


@app.get("/api/resumes/quota")
def resume_quota(session: UserSession = Depends(require_session_or_fail), db: Session = Depends(get_db)):
    return can_create_resume(db, session.user.id)


def _require_resume_quota(db: Session, user_id: str) -> None:
    quota = can_create_resume(db, user_id)
    if not quota.allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "Resume limit reached. Upgrade to premium for unlimited resumes.",
                "current": quota.current,
                "limit": quota.limit,
            },
        )


@app.post("/api/resumes", status_code=status.HTTP_201_CREATED)
def create_resume(
    req: Optional[CreateResumeRequest] = None,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
):
    """
    Create a resume if the free-plan limit allows it.
    Denied requests get 403 with the current count and limit.
    """
    _require_resume_quota(db, session.user.id)

    resume = _insert_resume(db, session.user.id, req.title if req else None)
    return _resume_to_dict(resume)


@app.post("/api/resumes/from-template", status_code=status.HTTP_201_CREATED)
def create_resume_from_template(
    values: ResumeValues,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
):
    """New resume pre-filled from a template; counts against the same quota as create."""
    _require_resume_quota(db, session.user.id)

    resume = new_resume(session.user.id, values, default_title="From Template")
    db.add(resume)
    db.commit()
    db.refresh(resume)
    return {"success": True, "resume": resume_detail(resume)}


@app.get("/api/resumes/{resume_id}")
def get_resume(
    resume_id: str,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
):
    resume = _owned_resume(db, resume_id, session.user.id)
    if not resume:
        raise HTTPException(status_code=404, detail="Resume not found")
    return resume_detail(resume)


@app.put("/api/resumes/{resume_id}")
def save_resume(
    resume_id: str,
    values: ResumeValues,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
):
    """
    Save the editor state. Fields missing from the body are left as they are;
    a section list that is sent replaces that section's rows.
    """
    if values.id is not None and values.id != resume_id:
        raise HTTPException(status_code=400, detail="Resume id mismatch")

    resume = _owned_resume(db, resume_id, session.user.id)
    if not resume:
        raise HTTPException(status_code=404, detail="Resume not found")

    apply_resume_values(resume, values)
    resume.updated_at = utcnow()
    db.commit()
    db.refresh(resume)
    return {"success": True, "resume": resume_detail(resume)}


@app.post("/dashboard/resumes/new")
def dashboard_create_resume(
    session: UserSession = Depends(require_session_or_redirect),
    db: Session = Depends(get_db),
):
    """Dashboard form action: send the user to the editor, or back with ?limit=true."""
    quota = can_create_resume(db, session.user.id)
    if not quota.allowed:
        return RedirectResponse("/dashboard?limit=true", status_code=status.HTTP_303_SEE_OTHER)

    resume = _insert_resume(db, session.user.id)
    return RedirectResponse(f"/dashboard/editor/{resume.id}", status_code=status.HTTP_303_SEE_OTHER)


@app.delete("/api/resumes/{resume_id}")
def delete_resume(
    resume_id: str,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    """Delete a resume together with its stored files."""
    user_id = session.user.id
    resume = _owned_resume(db, resume_id, user_id)
    if not resume:
        raise HTTPException(status_code=404, detail="Resume not found")

    files = (
        db.query(UserFile)
        .filter(UserFile.resume_id == resume_id, UserFile.user_id == user_id)
        .all()
    )
    keys = [f.storage_key for f in files]
    for f in files:
        db.delete(f)

    db.delete(resume)
    db.commit()

    _discard_blobs(store, keys)
    return {"deleted": True, "id": resume_id, "deletedFileCount": len(files)}


# ============================================================
# ========================= BILLING ==========================
# ============================================================

@app.get("/api/billing/status")
def billing_status(session: UserSession = Depends(require_session_or_fail), db: Session = Depends(get_db)):
    user_id = session.user.id
    subscription = get_subscription(db, user_id)
    return {
        "premium": is_premium_user(db, user_id),
        "currentPeriodEnd": (
            subscription.stripe_current_period_end.isoformat() if subscription else None
        ),
        "cancelAtPeriodEnd": bool(subscription and subscription.stripe_cancel_at_period_end),
        "resumes": can_create_resume(db, user_id),
        "ai": check_ai_usage_limit(db, user_id),
    }


# ============================================================
# ========================= UPLOADS ==========================
# ============================================================

def _file_to_dict(f: UserFile) -> Dict[str, Any]:
    return {
        "id": f.id,
        "resumeId": f.resume_id,
        "fileType": f.file_type,
        "fileName": f.file_name,
        "fileSize": f.file_size,
        "mimeType": f.mime_type,
        "url": storage_key_to_url(f.storage_key),
        "createdAt": f.created_at.isoformat() if f.created_at else None,
    }


def _resume_photos(db: Session, resume_id: str, user_id: str) -> List[UserFile]:
    return (
        db.query(UserFile)
        .filter(
            UserFile.resume_id == resume_id,
            UserFile.user_id == user_id,
            UserFile.file_type == "photo",
        )
        .all()
    )


@app.post("/api/files/upload")
def upload_photo(
    file: Optional[UploadFile] = File(None),
    file_type: Optional[str] = Form(None, alias="fileType"),
    resume_id: Optional[str] = Form(None, alias="resumeId"),
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    """
    Upload a resume photo. Resume PDFs go through /api/files/upload-url instead.
    Any existing photo of the resume is replaced.
    """
    user_id = session.user.id

    if file is None or not file_type:
        raise HTTPException(status_code=400, detail="Missing file or fileType")

    if file_type != "photo":
        raise HTTPException(
            status_code=400,
            detail="Only photo uploads are supported through this endpoint. "
                   "Use /api/files/upload-url for PDF uploads.",
        )

    if file.content_type not in settings.PHOTO_MIME_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid file type: {file.content_type}")

    # One byte past the limit is enough to reject; never buffer the rest
    data = file.file.read(settings.MAX_PHOTO_SIZE + 1)
    if len(data) > settings.MAX_PHOTO_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"File too large. Maximum size is {settings.MAX_PHOTO_SIZE // (1024 * 1024)}MB",
        )

    if not resume_id:
        raise HTTPException(status_code=400, detail="resumeId is required for photo uploads")

    resume = _owned_resume(db, resume_id, user_id)
    if not resume:
        raise HTTPException(status_code=404, detail="Resume not found for this user")

    file_id = uuid.uuid4().hex
    key = build_storage_key(user_id, file_id, file_extension(file.filename, "jpg"))
    # New object first: a failed put leaves the previous photo untouched
    store.put(key, data, file.content_type)

    old_keys = []
    for existing in _resume_photos(db, resume_id, user_id):
        old_keys.append(existing.storage_key)
        db.delete(existing)

    db.add(
        UserFile(
            id=file_id,
            user_id=user_id,
            resume_id=resume_id,
            file_type="photo",
            storage_key=key,
            file_name=file.filename or f"{file_id}.jpg",
            file_size=len(data),
            mime_type=file.content_type,
        )
    )

    url = storage_key_to_url(key)
    resume.photo_url = url
    resume.updated_at = utcnow()
    try:
        db.commit()
    except Exception:
        db.rollback()
        _discard_blobs(store, [key])
        raise
    db.refresh(resume)

    _discard_blobs(store, old_keys)

    resume_photo_synced = resume.photo_url == url
    if not resume_photo_synced:
        raise HTTPException(status_code=500, detail="Photo uploaded but failed to sync resume photo URL")

    logger.info("[upload] photo stored for resume %s", resume_id)
    return {"success": True, "url": url, "fileId": file_id, "resumePhotoSynced": resume_photo_synced}


@app.delete("/api/files/upload")
def delete_photo(
    file_type: Optional[str] = Query(None, alias="fileType"),
    resume_id: Optional[str] = Query(None, alias="resumeId"),
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    user_id = session.user.id

    if file_type != "photo":
        raise HTTPException(status_code=400, detail="DELETE currently supports only fileType=photo")

    if not resume_id:
        raise HTTPException(status_code=400, detail="resumeId is required to delete a photo")

    resume = _owned_resume(db, resume_id, user_id)
    if not resume:
        raise HTTPException(status_code=404, detail="Resume not found for this user")

    photos = _resume_photos(db, resume_id, user_id)
    keys = [photo.storage_key for photo in photos]
    for photo in photos:
        db.delete(photo)

    resume.photo_url = None
    resume.updated_at = utcnow()
    db.commit()
    db.refresh(resume)

    _discard_blobs(store, keys)

    return {
        "success": True,
        "resumePhotoCleared": resume.photo_url is None,
        "deletedFileCount": len(photos),
    }


@app.post("/api/files/upload-url")
def create_upload_url(
    req: UploadUrlRequest,
    session: UserSession = Depends(require_session_or_fail),
    store: BlobStore = Depends(get_blob_store),
):
    """
    Presigned PUT URL for a direct client upload of a resume PDF.
    The server picks the key; content type and size are locked into the signature.
    """
    if not req.file_name or not req.content_type or not req.file_type or not req.file_size:
        raise HTTPException(
            status_code=400,
            detail="Missing fileName, contentType, fileType, or fileSize",
        )

    if req.file_type != "resume_pdf":
        raise HTTPException(status_code=400, detail="Only resume_pdf uploads are supported")

    if req.content_type not in settings.PDF_MIME_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid content type: {req.content_type}. Only PDF files are allowed.",
        )

    if req.file_size <= 0 or req.file_size > settings.MAX_PDF_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid file size. Maximum allowed is {settings.MAX_PDF_SIZE // (1024 * 1024)}MB",
        )

    file_id = uuid.uuid4().hex
    key = build_storage_key(session.user.id, file_id, file_extension(req.file_name, "pdf"))
    upload_url = store.presigned_upload_url(key, req.content_type, req.file_size)

    return {"success": True, "uploadUrl": upload_url, "fileId": file_id, "storageKey": key}


@app.post("/api/files/confirm-upload")
def confirm_upload(
    req: ConfirmUploadRequest,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    """
    Called after a presigned upload finishes: verify the object exists and record it.
    """
    user_id = session.user.id

    if not (req.file_id and req.storage_key and req.file_name and req.file_size and req.mime_type):
        raise HTTPException(status_code=400, detail="Missing required fields")

    if not is_owned_by(req.storage_key, user_id):
        raise HTTPException(status_code=403, detail="Forbidden: key does not belong to this user")

    head = store.head(req.storage_key)
    if head is None:
        raise HTTPException(
            status_code=404,
            detail="File not found in storage. Upload may have failed.",
        )

    # Size comes from storage, not from the client
    db.add(
        UserFile(
            id=req.file_id,
            user_id=user_id,
            resume_id=None,
            file_type="resume_pdf",
            storage_key=req.storage_key,
            file_name=req.file_name,
            file_size=head.size,
            mime_type="application/pdf",
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Upload already confirmed")

    return {"success": True, "fileId": req.file_id}


@app.get("/api/files")
def list_files(
    file_type: Optional[str] = Query(None, alias="fileType"),
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
):
    q = db.query(UserFile).filter(UserFile.user_id == session.user.id)
    if file_type:
        q = q.filter(UserFile.file_type == file_type)
    return {"items": [_file_to_dict(f) for f in q.order_by(UserFile.created_at.desc()).all()]}


@app.delete("/api/files/{file_id}")
def delete_file(
    file_id: str,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    f = (
        db.query(UserFile)
        .filter(UserFile.id == file_id, UserFile.user_id == session.user.id)
        .first()
    )
    if not f:
        raise HTTPException(status_code=404, detail="File not found")

    key = f.storage_key
    db.delete(f)
    db.commit()

    _discard_blobs(store, [key])
    return {"success": True}


# ============================================================
# ====================== FILE GATEWAY ========================
# ============================================================

FILES_ROUTE_PREFIX = b"/api/files/"


def _raw_key_segments(request: Request, key: str) -> List[str]:
    """
    Still-encoded path segments after /api/files/.

    ``key`` has already been percent-decoded by the server, so an encoded "/"
    inside a segment is indistinguishable from a separator; prefer raw_path.
    Behind a proxy mount the raw path still carries the ``root_path`` prefix.
    """
    raw_path = request.scope.get("raw_path") or b""
    raw_path = raw_path.split(b"?", 1)[0]

    root_path = (request.scope.get("root_path") or "").encode("utf-8")
    if root_path and raw_path.startswith(root_path + b"/"):
        raw_path = raw_path[len(root_path):]

    if raw_path.startswith(FILES_ROUTE_PREFIX):
        return raw_path[len(FILES_ROUTE_PREFIX):].decode("utf-8", "replace").split("/")

    # No usable raw path: re-encode so the single decode downstream restores ``key``
    return [quote(s, safe="") for s in key.split("/")]


@app.get("/api/files/{key:path}")
def get_file(
    key: str,
    request: Request,
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    """
    Stream a stored object to its owner.

    Programmatic endpoint: a missing session is a 401, never a redirect.
    """
    result = serve_file(
        _raw_key_segments(request, key),
        lambda: get_session(request, db),
        store,
    )
    if isinstance(result, FileAccessError):
        return PlainTextResponse(result.message, status_code=result.status_code)

    return StreamingResponse(result.body, status_code=result.status, headers=result.headers)


# ============================================================
# ======================= AI ENHANCE =========================
# ============================================================

def _require_ai_allowance(db: Session, user_id: str) -> None:
    usage_check = check_ai_usage_limit(db, user_id)
    if not usage_check.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": (
                    f"AI usage limit reached ({usage_check.used:,} / {usage_check.limit:,} "
                    "tokens this month). Upgrade to premium for unlimited access."
                ),
                "used": usage_check.used,
                "limit": usage_check.limit,
            },
        )


@app.get("/api/ai/usage")
def ai_usage_info(session: UserSession = Depends(require_session_or_fail), db: Session = Depends(get_db)):
    return get_ai_usage_info(db, session.user.id).model_dump(by_alias=True)


@app.post("/api/ai/enhance")
def enhance_field(
    req: EnhanceFieldRequest,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm),
):
    """
    Rewrite (or generate, when empty) one resume field with the LLM.
    Free users are capped per calendar month; every call is metered.
    """
    user_id = session.user.id

    if req.field_type not in SECTION_PROMPTS:
        raise HTTPException(status_code=400, detail="Unknown section type.")

    _require_ai_allowance(db, user_id)

    messages = build_messages(req.field_type, req.current_text, req.context)
    try:
        completion = llm.complete(messages)
    except Exception:
        logger.exception("[ai/enhance] provider call failed")
        raise HTTPException(status_code=502, detail="AI enhancement failed. Please try again.")

    log_ai_usage(db, user_id, completion.usage, "enhance", model_id=completion.model)

    text = completion.text.strip()
    if not text:
        raise HTTPException(status_code=502, detail="AI returned empty text. Please try again.")

    max_len = req.max_length or settings.ENHANCE_MAX_LENGTH
    return {"success": True, "enhancedText": text[:max_len]}


# ============================================================
# ==================== AI: WHOLE RESUMES =====================
# ============================================================

def _owned_pdf(db: Session, file_id: str, user_id: str) -> UserFile:
    f = (
        db.query(UserFile)
        .filter(
            UserFile.id == file_id,
            UserFile.user_id == user_id,
            UserFile.file_type == "resume_pdf",
        )
        .first()
    )
    if not f:
        raise HTTPException(status_code=404, detail="File not found")
    return f


def _pdf_text(store: BlobStore, f: UserFile) -> str:
    obj = store.get(f.storage_key)
    if obj is None:
        raise HTTPException(status_code=404, detail="File not found in storage")

    text = extract_pdf_text(b"".join(obj.body))
    if not text:
        raise HTTPException(
            status_code=422,
            detail="Could not read any text from this PDF. Scanned documents are not supported.",
        )
    return text


def _structured_completion(db: Session, llm: LLMClient, user_id: str, messages, feature_type: str, model):
    try:
        completion = llm.complete(messages, temperature=0.2, json_mode=True)
    except Exception:
        logger.exception("[ai/%s] provider call failed", feature_type)
        raise HTTPException(status_code=502, detail="AI request failed. Please try again.")

    # Tokens were spent even if the answer turns out unusable
    log_ai_usage(db, user_id, completion.usage, feature_type, model_id=completion.model)

    try:
        return parse_structured(completion.text, model), completion.model
    except ValueError:
        logger.warning("[ai/%s] model returned JSON that does not fit %s", feature_type, model.__name__)
        raise HTTPException(status_code=502, detail="AI returned an invalid response. Please try again.")


@app.post("/api/ai/recreate", status_code=status.HTTP_201_CREATED)
def recreate_resume_from_pdf(
    req: RecreateResumeRequest,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
    llm: LLMClient = Depends(get_llm),
):
    """
    Turn an uploaded resume PDF into a new editable resume.

    The extraction is cached per file, so recreating from the same PDF again
    costs no tokens. A new resume still counts against the resume quota.
    """
    user_id = session.user.id
    f = _owned_pdf(db, req.file_id, user_id)
    _require_resume_quota(db, user_id)

    cached = get_cached_result(db, f.id, RESULT_EXTRACTION)
    if cached is not None:
        extraction = ResumeExtraction.model_validate(cached)
    else:
        _require_ai_allowance(db, user_id)
        messages = build_extraction_messages(_pdf_text(store, f), f.file_name)
        extraction, model_id = _structured_completion(
            db, llm, user_id, messages, "recreate", ResumeExtraction
        )
        save_cached_result(
            db, user_id, f.id, RESULT_EXTRACTION,
            extraction.model_dump(by_alias=True), model_id=model_id,
        )

    resume = extraction_to_resume(user_id, extraction)
    db.add(resume)
    db.commit()
    db.refresh(resume)

    logger.info("[ai/recreate] resume %s created from file %s", resume.id, f.id)
    return {"success": True, "resumeId": resume.id, "cached": cached is not None}


@app.post("/api/ai/analyze")
def analyze_resume_pdf(
    req: AnalyzeResumeRequest,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
    llm: LLMClient = Depends(get_llm),
):
    """Scored review of an uploaded resume PDF; cached per file unless forceRefresh."""
    user_id = session.user.id
    f = _owned_pdf(db, req.file_id, user_id)

    if not req.force_refresh:
        cached = get_cached_result(db, f.id, RESULT_ANALYSIS)
        if cached is not None:
            return {"success": True, "analysis": cached, "cached": True}

    _require_ai_allowance(db, user_id)
    messages = build_analysis_messages(_pdf_text(store, f), f.file_name)
    analysis, model_id = _structured_completion(db, llm, user_id, messages, "analyze", ResumeAnalysis)

    data = analysis.model_dump(by_alias=True)
    save_cached_result(db, user_id, f.id, RESULT_ANALYSIS, data, model_id=model_id)
    return {"success": True, "analysis": data, "cached": False}


@app.get("/api/portfolio/{resume_id}", response_class=HTMLResponse)
def generate_portfolio(
    resume_id: str,
    session: UserSession = Depends(require_session_or_fail),
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm),
):
    """Single-page HTML portfolio generated from a stored resume."""
    user_id = session.user.id
    resume = _owned_resume(db, resume_id, user_id)
    if not resume:
        raise HTTPException(status_code=404, detail="Resume not found")

    _require_ai_allowance(db, user_id)

    try:
        completion = llm.complete(build_portfolio_messages(resume_detail(resume)))
    except Exception:
        logger.exception("[ai/portfolio] provider call failed")
        raise HTTPException(status_code=502, detail="Portfolio generation failed. Please try again.")

    log_ai_usage(db, user_id, completion.usage, "portfolio", model_id=completion.model)

    html = clean_html(completion.text)
    if not html:
        raise HTTPException(status_code=502, detail="AI returned an empty page. Please try again.")

    return HTMLResponse(html, headers={"Cache-Control": "no-store"})
