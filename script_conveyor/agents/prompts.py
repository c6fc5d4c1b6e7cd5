"""
Prompt templates for the scriptwriter and editor agents.

Templates are plain format strings; the builder functions below fill in
the optional sections (instructions, examples, corrective context) only
when they have content.
"""

from ..config import GenerationSettings, StylePreferences
from ..models import Draft, Review, Scene, SourceItem

LANGUAGE_NAMES = {"en": "English", "ru": "Russian"}

SCRIPTWRITER_SYSTEM_PROMPT = """You are a scriptwriter for short vertical videos (Reels, Shorts, TikTok).
You turn a news article into a spoken script split into scenes.

Rules:
- The first scene is the hook. It must stop the scroll in under 3 seconds.
- One idea per scene. Short sentences that sound natural when read aloud.
- Every scene gets a visual note describing what is on screen.
- The last scene ends with a call to action.

Output JSON only, in this shape:
{
  "scenes": [
    {"number": 1, "text": "spoken text", "visual": "what is on screen", "duration": 5}
  ],
  "total_duration": 45
}"""

SCRIPTWRITER_USER_PROMPT_TEMPLATE = """Write a script for this article.

Title: {title}
Body: {body}

Style: {formality}, {tone}. Write in {language}.
Target length: {min_duration} to {max_duration} seconds in total.
Draft number: {version}
{extra_sections}"""

EDITOR_SYSTEM_PROMPT = """You are a script editor for short vertical videos.
You review a drafted script against its source article and decide whether it is ready to record.

Score the script from 1 to 10:
- 8-10: ready to record, verdict "approved"
- 5-7: fixable, verdict "needs_revision"
- 1-4: wrong angle or factually off, verdict "rejected"

Comment on individual scenes with typed comments: "positive", "negative", "suggestion" or "info".

Output JSON only, in this shape:
{
  "score": 7,
  "verdict": "needs_revision",
  "overall_comment": "one or two sentences",
  "scene_comments": [
    {"scene_number": 1, "comments": [{"type": "suggestion", "text": "..."}]}
  ]
}"""

EDITOR_USER_PROMPT_TEMPLATE = """Review this script.

Title: {title}
Body: {body}

Expected style: {formality}, {tone}, in {language}.
Expected length: {min_duration} to {max_duration} seconds. Draft length: {total_duration} seconds.
Approval threshold: {threshold}/10

Script:
{script}
{extra_sections}"""


def _style_fields(style: StylePreferences) -> dict[str, str]:
    return {
        "formality": style.formality,
        "tone": style.tone,
        "language": LANGUAGE_NAMES.get(style.language, style.language),
    }


def _format_scenes(scenes: list[Scene]) -> str:
    return "\n".join(
        f"[{scene.number}] ({scene.duration:g}s) {scene.text}\n    Visual: {scene.visual}"
        for scene in scenes
    )


def _format_review(review: Review) -> str:
    lines = [f"Score: {review.score:g}/10 ({review.verdict.value})", review.overall_comment]
    for scene_comment in review.scene_comments:
        for comment in scene_comment.comments:
            lines.append(f"- Scene {scene_comment.scene_number} [{comment.type.value}]: {comment.text}")
    return "\n".join(lines)


def build_scriptwriter_prompt(
    source: SourceItem,
    version: int,
    settings: GenerationSettings,
    review: Review | None = None,
    feedback: str | None = None,
    target_scenes: list[int] | None = None,
    previous_scenes: list[Scene] | None = None,
    learned_instructions: list[str] | None = None,
) -> str:
    """Build the user prompt for one draft."""
    sections = []

    if settings.writer_instructions:
        sections.append(f"Additional instructions:\n{settings.writer_instructions}")
    if learned_instructions:
        sections.append(
            "Lessons from earlier reviews:\n" + "\n".join(f"- {i}" for i in learned_instructions)
        )
    if settings.examples:
        examples = "\n\n".join(
            f"Example {i}:\n{example}" for i, example in enumerate(settings.examples, start=1)
        )
        sections.append(f"Scripts we liked before:\n{examples}")

    if previous_scenes:
        sections.append(f"Previous draft:\n{_format_scenes(previous_scenes)}")
    if review is not None:
        sections.append(f"Editor feedback on the previous draft:\n{_format_review(review)}")
    if feedback:
        block = f"Reviewer feedback to address:\n{feedback}"
        if target_scenes:
            refs = ", ".join(str(n) for n in target_scenes)
            block += f"\nOnly rewrite scenes {refs}; keep the other scenes as they are."
        sections.append(block)

    return SCRIPTWRITER_USER_PROMPT_TEMPLATE.format(
        title=source.title,
        body=source.body,
        min_duration=settings.duration.min,
        max_duration=settings.duration.max,
        version=version,
        extra_sections="\n\n".join(sections),
        **_style_fields(settings.style),
    )


def build_editor_prompt(draft: Draft, source: SourceItem, settings: GenerationSettings) -> str:
    """Build the user prompt for reviewing one draft."""
    sections = []
    if settings.editor_instructions:
        sections.append(f"Additional review criteria:\n{settings.editor_instructions}")

    return EDITOR_USER_PROMPT_TEMPLATE.format(
        title=source.title,
        body=source.body,
        min_duration=settings.duration.min,
        max_duration=settings.duration.max,
        total_duration=f"{draft.total_duration:g}",
        threshold=f"{settings.approval_threshold:g}",
        script=_format_scenes(draft.scenes),
        extra_sections="\n\n".join(sections),
        **_style_fields(settings.style),
    )
