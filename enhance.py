from typing import Dict, List

_RETURN_ONLY = "Return ONLY the improved text. No preamble, no quotes, no explanations."

SECTION_PROMPTS: Dict[str, str] = {
    "profile": (
        "You are an expert resume writer specialising in professional summaries. "
        "Write a concise summary (3-5 sentences) that opens with the candidate's "
        "professional identity, highlights 2-3 signature strengths and closes with "
        "the value they bring. Write in implied first person (no \"I\") and avoid "
        "cliches such as \"passionate\" or \"team player\". " + _RETURN_ONLY
    ),
    "experience": (
        "You are an expert resume writer specialising in work experience. Rewrite "
        "the description as 4-6 achievement-oriented bullet points, one per line. "
        "Start each with a strong action verb, follow problem -> action -> result, "
        "and keep plausible metrics from the original text. " + _RETURN_ONLY
    ),
    "education": (
        "You are an expert resume writer. Enhance the education description with "
        "relevant coursework, honours and leadership roles in 2-4 short items, one "
        "per line. " + _RETURN_ONLY
    ),
    "project": (
        "You are an expert resume writer. Rewrite the project description: one "
        "sentence on what it does, then 3-5 bullet points (one per line) covering "
        "the stack, architecture decisions and measurable outcomes. " + _RETURN_ONLY
    ),
    "award": (
        "You are an expert resume writer. In 1-3 sentences, explain what the award "
        "recognised, how selective it was and its scope. " + _RETURN_ONLY
    ),
    "publication": (
        "You are an expert resume writer. In 2-4 sentences, summarise the work, its "
        "key contribution and its impact. " + _RETURN_ONLY
    ),
    "certificate": (
        "You are an expert resume writer. In 1-3 sentences, explain what the "
        "certification validates and the competencies it covers. " + _RETURN_ONLY
    ),
    "course": (
        "You are an expert resume writer. In 1-3 sentences, describe the topics and "
        "skills the course covered and any practical component. " + _RETURN_ONLY
    ),
}


def build_user_message(current_text: str, context: Dict[str, str]) -> str:
    context_lines = "\n".join(
        f"{k}: {v}" for k, v in (context or {}).items() if v and str(v).strip()
    )

    if current_text and current_text.strip():
        parts: List[str] = []
        if context_lines:
            parts.append(f"Context:\n{context_lines}\n")
        parts.append(f"Current text:\n{current_text}\n")
        parts.append(
            "Please enhance and improve the text above. Preserve the core meaning "
            "but make it more professional, impactful, and polished. "
            "Return ONLY the improved text."
        )
        return "\n".join(parts)

    # Empty field: generate from context instead
    if context_lines:
        return (
            f"Context:\n{context_lines}\n\n"
            "The description field is currently empty. Based on the context above, "
            "generate a professional description. Return ONLY the description text."
        )

    return (
        "The description field is currently empty and no additional context is "
        "available. Generate a brief, professional placeholder description that "
        "the user can customize. Return ONLY the text."
    )


def build_messages(field_type: str, current_text: str, context: Dict[str, str]) -> List[Dict[str, str]]:
    """Chat messages for ``field_type``; raises KeyError for unknown sections."""
    return [
        {"role": "system", "content": SECTION_PROMPTS[field_type]},
        {"role": "user", "content": build_user_message(current_text, context)},
    ]
