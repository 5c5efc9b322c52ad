"""
AI features that work on a whole resume rather than a single field:

  - recreate: uploaded PDF -> structured extraction -> new editable resume
  - analyze:  uploaded PDF -> scored review
  - portfolio: stored resume -> single-page HTML portfolio

Extractions and analyses are cached per uploaded file in ``ai_results``.
"""

import datetime as dt
import io
import json
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel, to_snake
from pypdf import PdfReader
from pypdf.errors import PyPdfError
from sqlalchemy.orm import Session

import settings
from models import AiResult, Resume
from resumes import SECTIONS

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

RESULT_EXTRACTION = "extraction"
RESULT_ANALYSIS = "analysis"

_DATE_COLUMNS = {"start_date", "end_date", "date"}
_BOOKKEEPING_COLUMNS = {"id", "resume_id", "visible", "display_order"}

# Editor section ids, in the order a recreated resume shows them
_SECTION_IDS = [
    ("profile", "summary"),
    ("education", "educations"),
    ("skills", "skills"),
    ("experience", "work_experiences"),
    ("projects", "projects"),
    ("awards", "awards"),
    ("publications", "publications"),
    ("certificates", "certificates"),
    ("languages", "languages"),
    ("courses", "courses"),
    ("references", "references"),
    ("interests", "interests"),
]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ===================== STRUCTURED OUTPUTS =====================

class ResumeExtraction(_CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    job_title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    linkedin: Optional[str] = None
    website: Optional[str] = None
    summary: Optional[str] = None
    skills: List[str] = Field(default_factory=list)

    work_experiences: List[Dict[str, Any]] = Field(default_factory=list)
    educations: List[Dict[str, Any]] = Field(default_factory=list)
    projects: List[Dict[str, Any]] = Field(default_factory=list)
    awards: List[Dict[str, Any]] = Field(default_factory=list)
    publications: List[Dict[str, Any]] = Field(default_factory=list)
    certificates: List[Dict[str, Any]] = Field(default_factory=list)
    languages: List[Dict[str, Any]] = Field(default_factory=list)
    courses: List[Dict[str, Any]] = Field(default_factory=list)
    references: List[Dict[str, Any]] = Field(default_factory=list)
    interests: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator(
        "skills", "work_experiences", "educations", "projects", "awards", "publications",
        "certificates", "languages", "courses", "references", "interests",
        mode="before",
    )
    @classmethod
    def _null_to_empty(cls, v):
        return [x for x in v if x is not None] if v is not None else []


class SectionFeedback(_CamelModel):
    name: str
    score: float = Field(ge=0, le=100)
    feedback: str
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)


class AtsCompatibility(_CamelModel):
    score: float = Field(ge=0, le=100)
    issues: List[str] = Field(default_factory=list)


class ResumeAnalysis(_CamelModel):
    overall_score: float = Field(ge=0, le=100)
    summary_feedback: str
    top_strengths: List[str] = Field(default_factory=list, max_length=5)
    critical_improvements: List[str] = Field(default_factory=list, max_length=5)
    sections: List[SectionFeedback] = Field(default_factory=list)
    ats_compatibility: AtsCompatibility


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_structured(text: str, model: Type[T]) -> T:
    """Validate a JSON completion against ``model``; raises ValueError when it does not fit."""
    return model.model_validate_json(_strip_code_fence(text))


# ========================= PDF TEXT =========================

def extract_pdf_text(data: bytes) -> str:
    """Plain text of every page, or "" when the PDF cannot be read (scanned, corrupt)."""
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PyPdfError, ValueError) as e:
        logger.warning("[pdf] could not read PDF: %s", e)
        return ""
    return "\n".join(pages).strip()[: settings.PDF_TEXT_MAX_CHARS]


# ========================= PROMPTS =========================

_EXTRACTION_SYSTEM = (
    "You are a resume data extraction engine. Extract EVERY piece of structured "
    "data from the resume text with exact wording: do not rephrase, summarise or "
    "improve anything. If a field is not present, use null; never guess.\n"
    "Normalise all dates to YYYY-MM-DD: 'June 2023' -> 2023-06-01, '2023' -> "
    "2023-01-01. 'Present' or 'Current' means endDate is null.\n"
    "Keep bullet points as newline-separated lines inside description, and keep "
    "the resume's own ordering within each section.\n"
    "Respond with a single JSON object and nothing else."
)

_EXTRACTION_SHAPE = {
    "firstName": "", "lastName": "", "jobTitle": "", "email": "", "phone": "",
    "city": "", "country": "", "linkedin": "", "website": "", "summary": "",
    "skills": [""],
    "workExperiences": [{"position": "", "company": "", "location": "", "subheading": "",
                         "startDate": "", "endDate": "", "description": ""}],
    "educations": [{"degree": "", "school": "", "fieldOfStudy": "", "gpa": "", "location": "",
                    "startDate": "", "endDate": "", "description": ""}],
    "projects": [{"title": "", "subtitle": "", "description": "", "link": "",
                  "startDate": "", "endDate": ""}],
    "awards": [{"title": "", "issuer": "", "description": "", "date": ""}],
    "publications": [{"title": "", "publisher": "", "authors": "", "description": "",
                      "date": "", "link": ""}],
    "certificates": [{"title": "", "issuer": "", "description": "", "date": "", "link": "",
                      "credentialId": ""}],
    "languages": [{"language": "", "proficiency": ""}],
    "courses": [{"name": "", "institution": "", "description": "", "date": ""}],
    "references": [{"name": "", "position": "", "company": "", "email": "", "phone": ""}],
    "interests": [{"name": ""}],
}

_ANALYSIS_SYSTEM = (
    "You are a resume reviewer combining three views: a recruiter doing a "
    "6-second scan, a hiring manager reading for substance and impact, and an ATS "
    "parser checking machine readability.\n"
    "Scores are 0-100 and calibrated: most resumes land between 40 and 80, only "
    "exceptional ones exceed 85. A typical resume with 3 years of experience and a "
    "mix of quantified and unquantified bullets scores around 55-65.\n"
    "Feedback must be specific (cite the resume's own content), actionable and "
    "prioritised.\n"
    "Respond with a single JSON object and nothing else."
)

_ANALYSIS_SHAPE = {
    "overallScore": 0,
    "summaryFeedback": "2-3 sentences",
    "topStrengths": ["3-5 items"],
    "criticalImprovements": ["3-5 items, most impactful first"],
    "sections": [{"name": "Summary | Work Experience | Education | Skills | Projects | "
                          "Formatting | Overall Impact",
                  "score": 0, "feedback": "", "strengths": [""], "improvements": [""]}],
    "atsCompatibility": {"score": 0, "issues": [""]},
}

_PORTFOLIO_SYSTEM = (
    "You are a web designer. Turn the resume JSON you are given into a single, "
    "self-contained HTML5 page in a neobrutalist style: thick black borders, hard "
    "offset shadows, flat saturated colours, bold sans-serif headings. Inline all "
    "CSS in one <style> tag; no external scripts, fonts or images except the photo "
    "URL if present. Use only facts from the JSON. Skip sections that are empty "
    "or marked not visible.\n"
    "Return ONLY the HTML document, starting with <!DOCTYPE html>."
)


def _json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=2, default=str)


def build_extraction_messages(pdf_text: str, file_name: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": _EXTRACTION_SYSTEM},
        {
            "role": "user",
            "content": (
                f'Resume file: "{file_name}"\n\n'
                f"Return JSON with exactly this shape (omit or null what is missing):\n"
                f"{_json(_EXTRACTION_SHAPE)}\n\n"
                f"Resume text:\n{pdf_text}"
            ),
        },
    ]


def build_analysis_messages(pdf_text: str, file_name: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": _ANALYSIS_SYSTEM},
        {
            "role": "user",
            "content": (
                f'Analyse this resume ("{file_name}").\n\n'
                f"Return JSON with exactly this shape:\n{_json(_ANALYSIS_SHAPE)}\n\n"
                f"Resume text:\n{pdf_text}"
            ),
        },
    ]


def build_portfolio_messages(resume: Dict[str, Any]) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": _PORTFOLIO_SYSTEM},
        {"role": "user", "content": f"Resume JSON:\n{_json(resume)}"},
    ]


def clean_html(text: str) -> str:
    return _strip_code_fence(text)


# ==================== EXTRACTION -> RESUME ====================

def _parse_date(value: Any) -> Optional[dt.date]:
    try:
        return dt.date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def _section_rows(row_cls, items: List[Dict[str, Any]]) -> list:
    columns = set(row_cls.__table__.columns.keys()) - _BOOKKEEPING_COLUMNS
    rows = []
    for item in items:
        kwargs: Dict[str, Any] = {}
        for key, value in (item or {}).items():
            column = to_snake(key)
            if column not in columns or value is None or not str(value).strip():
                continue
            kwargs[column] = _parse_date(value) if column in _DATE_COLUMNS else str(value).strip()
        if kwargs:
            rows.append(row_cls(**kwargs, visible=True, display_order=len(rows)))
    return rows


def section_layout(extraction: ResumeExtraction):
    """(sectionOrder, sectionVisibility) for a resume built from ``extraction``."""
    present = {"personal-info": True}
    for section_id, attr in _SECTION_IDS:
        present[section_id] = bool(getattr(extraction, attr))
    order = [section_id for section_id, shown in present.items() if shown]
    return order, present


def extraction_to_resume(user_id: str, extraction: ResumeExtraction) -> Resume:
    names = [n for n in (extraction.first_name, extraction.last_name) if n]
    order, visibility = section_layout(extraction)

    resume = Resume(
        user_id=user_id,
        title=f"{' '.join(names)}'s Resume" if names else "Imported Resume",
        first_name=extraction.first_name,
        last_name=extraction.last_name,
        job_title=extraction.job_title,
        email=extraction.email,
        phone=extraction.phone,
        city=extraction.city,
        country=extraction.country,
        linkedin=extraction.linkedin,
        website=extraction.website,
        summary=extraction.summary,
        skills=[s.strip() for s in extraction.skills if s and s.strip()],
        section_order=order,
        section_visibility=visibility,
    )
    for attr, (row_cls, _) in SECTIONS.items():
        setattr(resume, attr, _section_rows(row_cls, getattr(extraction, attr)))
    return resume


# ========================= CACHE =========================

def get_cached_result(db: Session, file_id: str, result_type: str) -> Optional[Dict[str, Any]]:
    row = (
        db.query(AiResult)
        .filter(AiResult.user_file_id == file_id, AiResult.result_type == result_type)
        .order_by(AiResult.id.desc())
        .first()
    )
    return row.result_data if row else None


def save_cached_result(
    db: Session,
    user_id: str,
    file_id: str,
    result_type: str,
    data: Dict[str, Any],
    model_id: Optional[str] = None,
) -> None:
    # One cached result per (file, type)
    (
        db.query(AiResult)
        .filter(AiResult.user_file_id == file_id, AiResult.result_type == result_type)
        .delete(synchronize_session=False)
    )
    db.add(
        AiResult(
            user_id=user_id,
            user_file_id=file_id,
            result_type=result_type,
            result_data=data,
            model_id=model_id,
        )
    )
    db.commit()
