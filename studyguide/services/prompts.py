"""Prompt assembly for study guide generation."""

from typing import List, Optional

from studyguide.utils.errors import ConfigurationError

BEGIN_MARKER = "BEGIN NOW"

GENERATION_REQUEST = (
    "Produce the study guide and transcript for the attached lecture materials. "
    "Start the study guide with ===STUDY_GUIDE=== and the transcript with ===TRANSCRIPT===."
)


def get_system_instruction(configured: Optional[str] = None) -> str:
    """
    Return the configured system instruction.

    Raises:
        ConfigurationError: If SYSTEM_INSTRUCTIONS is not set
    """
    if configured is None:
        from studyguide.config import get_settings

        configured = get_settings().system_instructions

    if not configured or not configured.strip():
        raise ConfigurationError("Missing SYSTEM_INSTRUCTIONS.")
    return configured


def build_source_directive(has_audio: bool, has_slides: bool, has_raw_notes: bool = False) -> str:
    """Tell the model which sources were actually supplied for this job."""
    allowed: List[str] = []
    if has_audio:
        allowed.append("Transcript")
    if has_slides:
        allowed.append("Slides")
    if has_raw_notes:
        allowed.append("Raw notes")

    lines = [
        "SOURCE AVAILABILITY (RUNTIME)",
        "Transcript source: provided from audio."
        if has_audio
        else 'Transcript source: not provided. Use "(No transcript provided.)" and do not cite Transcript.',
        "Slides source: provided."
        if has_slides
        else 'Slides source: not provided. Use "(No slides provided.)" and do not cite Slides.',
        "Raw notes source: provided."
        if has_raw_notes
        else 'Raw notes source: not provided. Use "(No raw notes provided.)" and do not cite Raw notes.',
    ]

    if allowed:
        lines.append(f"Allowed Evidence Snapshot sources: {', '.join(allowed)}.")
        lines.append("Do not use any other source labels.")

    return "\n".join(lines)


def build_prompt(
    system_prompt: str,
    has_audio: bool,
    has_slides: bool,
    user_context: Optional[str] = None,
    has_raw_notes: bool = False,
) -> str:
    """
    Merge the system prompt, the runtime source directive and the user's focus.

    Everything from the last ``BEGIN NOW`` marker onwards stays at the end so
    the model still reads it as the final instruction.
    """
    system_prompt = (system_prompt or "").strip()
    user_context = (user_context or "").strip()
    directive = build_source_directive(has_audio, has_slides, has_raw_notes)

    before, after = system_prompt, ""
    marker_index = system_prompt.rfind(BEGIN_MARKER)
    if marker_index != -1:
        before = system_prompt[:marker_index].strip()
        after = system_prompt[marker_index:].strip()

    parts = [before, directive]
    if user_context:
        parts.append(f"User focus:\n{user_context}")
    if after:
        parts.append(after)

    return "\n\n".join(part for part in parts if part)
