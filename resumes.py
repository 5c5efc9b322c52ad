"""
Resume editor payloads and how they land on the ORM.

``ResumeValues`` is the body of a save from the editor and of a
create-from-template. Scalar fields are copied only when present in the
payload; a list section that is present replaces every stored row of that
section, an absent one is left alone.
"""

import datetime as dt
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from models import (
    Award,
    Certificate,
    Course,
    Education,
    Interest,
    Language,
    Project,
    Publication,
    Resume,
    ResumeReference,
    WorkExperience,
)

MAX_SECTION_ITEMS = 20
MAX_SKILLS = 50

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
_COLOR_PATTERN = r"^#[0-9a-fA-F]{3,8}$"


class _Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        # Empty form inputs are stored as NULL
        if isinstance(v, str) and not v.strip():
            return None
        return v


# ---------- list sections ----------
class _SectionItem(_Payload):
    visible: bool = True


class WorkExperienceIn(_SectionItem):
    position: Optional[str] = Field(None, max_length=200)
    company: Optional[str] = Field(None, max_length=200)
    location: Optional[str] = Field(None, max_length=200)
    subheading: Optional[str] = Field(None, max_length=200)
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    description: Optional[str] = Field(None, max_length=2000)


class EducationIn(_SectionItem):
    degree: Optional[str] = Field(None, max_length=200)
    school: Optional[str] = Field(None, max_length=200)
    field_of_study: Optional[str] = Field(None, max_length=200)
    gpa: Optional[str] = Field(None, max_length=50)
    location: Optional[str] = Field(None, max_length=200)
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    description: Optional[str] = Field(None, max_length=2000)


class ProjectIn(_SectionItem):
    title: Optional[str] = Field(None, max_length=200)
    subtitle: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    link: Optional[str] = Field(None, max_length=500)
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None


class AwardIn(_SectionItem):
    title: Optional[str] = Field(None, max_length=200)
    issuer: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    date: Optional[dt.date] = None


class PublicationIn(_SectionItem):
    title: Optional[str] = Field(None, max_length=300)
    publisher: Optional[str] = Field(None, max_length=200)
    authors: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = Field(None, max_length=2000)
    date: Optional[dt.date] = None
    link: Optional[str] = Field(None, max_length=500)


class CertificateIn(_SectionItem):
    title: Optional[str] = Field(None, max_length=200)
    issuer: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    date: Optional[dt.date] = None
    link: Optional[str] = Field(None, max_length=500)
    credential_id: Optional[str] = Field(None, max_length=200)


class LanguageIn(_SectionItem):
    language: Optional[str] = Field(None, max_length=100)
    proficiency: Optional[str] = Field(None, max_length=100)


class CourseIn(_SectionItem):
    name: Optional[str] = Field(None, max_length=200)
    institution: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    date: Optional[dt.date] = None


class ReferenceIn(_SectionItem):
    name: Optional[str] = Field(None, max_length=200)
    position: Optional[str] = Field(None, max_length=200)
    company: Optional[str] = Field(None, max_length=200)
    email: Optional[str] = Field(None, max_length=200, pattern=_EMAIL_PATTERN)
    phone: Optional[str] = Field(None, max_length=30)


class InterestIn(_SectionItem):
    name: Optional[str] = Field(None, max_length=100)


# attribute on Resume -> (ORM row class, payload item class)
SECTIONS = {
    "work_experiences": (WorkExperience, WorkExperienceIn),
    "educations": (Education, EducationIn),
    "projects": (Project, ProjectIn),
    "awards": (Award, AwardIn),
    "publications": (Publication, PublicationIn),
    "certificates": (Certificate, CertificateIn),
    "languages": (Language, LanguageIn),
    "courses": (Course, CourseIn),
    "references": (ResumeReference, ReferenceIn),
    "interests": (Interest, InterestIn),
}


# ---------- the resume itself ----------
class ResumeValues(_Payload):
    id: Optional[str] = None

    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=500)
    photo_url: Optional[str] = Field(None, max_length=500)
    color_hex: Optional[str] = Field(None, max_length=9, pattern=_COLOR_PATTERN)
    border_style: Optional[str] = Field(None, max_length=50)
    summary: Optional[str] = Field(None, max_length=1000)

    first_name: Optional[str] = Field(None, max_length=200)
    last_name: Optional[str] = Field(None, max_length=200)
    job_title: Optional[str] = Field(None, max_length=200)
    city: Optional[str] = Field(None, max_length=200)
    country: Optional[str] = Field(None, max_length=200)
    phone: Optional[str] = Field(None, max_length=30)
    email: Optional[str] = Field(None, max_length=200, pattern=_EMAIL_PATTERN)
    linkedin: Optional[str] = Field(None, max_length=500)
    website: Optional[str] = Field(None, max_length=500)

    layout: Optional[str] = Field(None, max_length=50)
    font_size: Optional[int] = Field(None, ge=6, le=24)
    font_family: Optional[str] = Field(None, max_length=50)
    skills: Optional[List[str]] = Field(None, max_length=MAX_SKILLS)
    section_order: Optional[List[str]] = Field(None, max_length=50)
    section_visibility: Optional[Dict[str, bool]] = None
    field_visibility: Optional[Dict[str, Any]] = None

    work_experiences: Optional[List[WorkExperienceIn]] = Field(None, max_length=MAX_SECTION_ITEMS)
    educations: Optional[List[EducationIn]] = Field(None, max_length=MAX_SECTION_ITEMS)
    projects: Optional[List[ProjectIn]] = Field(None, max_length=MAX_SECTION_ITEMS)
    awards: Optional[List[AwardIn]] = Field(None, max_length=MAX_SECTION_ITEMS)
    publications: Optional[List[PublicationIn]] = Field(None, max_length=MAX_SECTION_ITEMS)
    certificates: Optional[List[CertificateIn]] = Field(None, max_length=MAX_SECTION_ITEMS)
    languages: Optional[List[LanguageIn]] = Field(None, max_length=MAX_SECTION_ITEMS)
    courses: Optional[List[CourseIn]] = Field(None, max_length=MAX_SECTION_ITEMS)
    references: Optional[List[ReferenceIn]] = Field(None, max_length=MAX_SECTION_ITEMS)
    interests: Optional[List[InterestIn]] = Field(None, max_length=MAX_SECTION_ITEMS)

    @field_validator("skills")
    @classmethod
    def _skills_are_short(cls, v):
        if v is None:
            return v
        skills = [s.strip() for s in v if s and s.strip()]
        if any(len(s) > 100 for s in skills):
            raise ValueError("each skill must be at most 100 characters")
        return skills


# Columns that may not be NULL fall back to these when a payload clears them
_FIELD_DEFAULTS = {
    "color_hex": lambda: "#000000",
    "border_style": lambda: "squircle",
    "layout": lambda: "single-column",
    "font_size": lambda: 10,
    "font_family": lambda: "serif",
    "skills": list,
    "section_order": list,
    "section_visibility": dict,
    "field_visibility": dict,
}

RESUME_FIELDS = [
    "title", "description", "photo_url", "color_hex", "border_style", "summary",
    "first_name", "last_name", "job_title", "city", "country", "phone", "email",
    "linkedin", "website", "layout", "font_size", "font_family", "skills",
    "section_order", "section_visibility", "field_visibility",
]


def apply_resume_values(resume: Resume, values: ResumeValues) -> None:
    sent = values.model_fields_set

    for name in RESUME_FIELDS:
        if name not in sent:
            continue
        value = getattr(values, name)
        if value is None and name in _FIELD_DEFAULTS:
            value = _FIELD_DEFAULTS[name]()
        setattr(resume, name, value)

    for name, (row_cls, _) in SECTIONS.items():
        if name not in sent:
            continue
        items = getattr(values, name) or []
        setattr(
            resume,
            name,
            [row_cls(**item.model_dump(), display_order=i) for i, item in enumerate(items)],
        )


def new_resume(user_id: str, values: ResumeValues, default_title: str) -> Resume:
    resume = Resume(user_id=user_id)
    apply_resume_values(resume, values)
    if not resume.title:
        resume.title = default_title
    return resume


# ---------- serialisation ----------
def _row_to_dict(row, item_cls) -> Dict[str, Any]:
    data = {"id": row.id, "displayOrder": row.display_order}
    for name in item_cls.model_fields:
        data[to_camel(name)] = getattr(row, name)
    return data


def resume_detail(resume: Resume) -> Dict[str, Any]:
    """Everything the editor needs to render one resume."""
    data: Dict[str, Any] = {"id": resume.id}
    for name in RESUME_FIELDS:
        data[to_camel(name)] = getattr(resume, name)
    for name, (_, item_cls) in SECTIONS.items():
        data[to_camel(name)] = [_row_to_dict(r, item_cls) for r in getattr(resume, name)]
    data["createdAt"] = resume.created_at
    data["updatedAt"] = resume.updated_at
    return data
