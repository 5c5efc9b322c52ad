import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import declared_attr, relationship

from database import Base


def _new_id() -> str:
    return uuid.uuid4().hex


def _section(cls_name: str):
    # Child rows live and die with the resume; assigning a new list replaces them
    return relationship(
        cls_name,
        cascade="all, delete-orphan",
        order_by=f"{cls_name}.display_order",
    )


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    password_hash = Column(String, nullable=True)  # for email/password users
    google_id = Column(String, nullable=True)      # for Google OAuth users
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


class Resume(Base):
    __tablename__ = "resumes"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)

    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)

    photo_url = Column(String, nullable=True)
    color_hex = Column(String, nullable=False, default="#000000")
    border_style = Column(String, nullable=False, default="squircle")
    summary = Column(Text, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    job_title = Column(String, nullable=True)
    city = Column(String, nullable=True)
    country = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    linkedin = Column(String, nullable=True)
    website = Column(String, nullable=True)

    layout = Column(String, nullable=False, default="single-column")
    font_size = Column(Integer, nullable=False, default=10)
    font_family = Column(String, nullable=False, default="serif")
    skills = Column(JSON, nullable=False, default=list)
    section_order = Column(JSON, nullable=False, default=list)
    section_visibility = Column(JSON, nullable=False, default=dict)
    field_visibility = Column(JSON, nullable=False, default=dict)

    work_experiences = _section("WorkExperience")
    educations = _section("Education")
    projects = _section("Project")
    awards = _section("Award")
    publications = _section("Publication")
    certificates = _section("Certificate")
    languages = _section("Language")
    courses = _section("Course")
    references = _section("ResumeReference")
    interests = _section("Interest")

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )


class UserSubscription(Base):
    """Billing state mirrored from Stripe. Read-only for everything in this service."""

    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), unique=True, nullable=False)
    stripe_customer_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=True)
    stripe_price_id = Column(String, nullable=True)
    stripe_current_period_end = Column(DateTime, nullable=False)
    stripe_cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


class UserFile(Base):
    __tablename__ = "user_files"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    # null for standalone uploads (resume PDFs)
    resume_id = Column(String, ForeignKey("resumes.id"), nullable=True)
    file_type = Column(String, nullable=False)  # "photo" | "resume_pdf"
    storage_key = Column(String, unique=True, nullable=False)
    file_name = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False)
    mime_type = Column(String, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    ai_results = relationship("AiResult", cascade="all, delete-orphan")


class AiUsageLog(Base):
    __tablename__ = "ai_usage_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    feature_type = Column(String, nullable=False)  # see ai_usage.FEATURE_TYPES
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    model_id = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)


# ---------- resume sections ----------
class _SectionRow:
    """Columns shared by every per-resume list section."""

    id = Column(Integer, primary_key=True, index=True)
    visible = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)

    @declared_attr
    def resume_id(cls):
        return Column(String, ForeignKey("resumes.id", ondelete="CASCADE"), index=True, nullable=False)


class WorkExperience(_SectionRow, Base):
    __tablename__ = "work_experiences"

    position = Column(String, nullable=True)
    company = Column(String, nullable=True)
    location = Column(String, nullable=True)
    subheading = Column(String, nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)  # null = present
    description = Column(Text, nullable=True)


class Education(_SectionRow, Base):
    __tablename__ = "educations"

    degree = Column(String, nullable=True)
    school = Column(String, nullable=True)
    field_of_study = Column(String, nullable=True)
    gpa = Column(String, nullable=True)
    location = Column(String, nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)


class Project(_SectionRow, Base):
    __tablename__ = "projects"

    title = Column(String, nullable=True)
    subtitle = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    link = Column(String, nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)


class Award(_SectionRow, Base):
    __tablename__ = "awards"

    title = Column(String, nullable=True)
    issuer = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    date = Column(Date, nullable=True)


class Publication(_SectionRow, Base):
    __tablename__ = "publications"

    title = Column(String, nullable=True)
    publisher = Column(String, nullable=True)
    authors = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    date = Column(Date, nullable=True)
    link = Column(String, nullable=True)


class Certificate(_SectionRow, Base):
    __tablename__ = "certificates"

    title = Column(String, nullable=True)
    issuer = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    date = Column(Date, nullable=True)
    link = Column(String, nullable=True)
    credential_id = Column(String, nullable=True)


class Language(_SectionRow, Base):
    __tablename__ = "languages"

    language = Column(String, nullable=True)
    proficiency = Column(String, nullable=True)


class Course(_SectionRow, Base):
    __tablename__ = "courses"

    name = Column(String, nullable=True)
    institution = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    date = Column(Date, nullable=True)


class ResumeReference(_SectionRow, Base):
    __tablename__ = "resume_references"

    name = Column(String, nullable=True)
    position = Column(String, nullable=True)
    company = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)


class Interest(_SectionRow, Base):
    __tablename__ = "interests"

    name = Column(String, nullable=True)


class AiResult(Base):
    """Cached structured output for one uploaded PDF (extraction or analysis)."""

    __tablename__ = "ai_results"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    user_file_id = Column(String, ForeignKey("user_files.id", ondelete="CASCADE"), index=True, nullable=False)
    result_type = Column(String, nullable=False)  # extraction | analysis
    result_data = Column(JSON, nullable=False)
    model_id = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
