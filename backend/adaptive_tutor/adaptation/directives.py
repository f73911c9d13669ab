"""Adaptive directive generator.

Turns learner state (learning style, mastery score, struggle ratio,
struggle/strength topics) into explicit teaching instructions that are
injected into a specialist's prompt. Everything here is a pure function
of its inputs.

Scaffolding directives form a ladder keyed by upper mastery bounds: a
directive is emitted whenever the score is below its bound, so a lower
score always receives every scaffolding directive a higher score does.
"""

from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict


class LearningStyle(str, Enum):
    VISUAL = "visual"
    AUDITORY = "auditory"
    KINESTHETIC = "kinesthetic"
    READING_WRITING = "reading_writing"
    LOGICAL = "logical"
    SOCIAL = "social"
    SOLITARY = "solitary"


_STYLE_ALIASES: Dict[str, LearningStyle] = {
    "visual": LearningStyle.VISUAL,
    "auditory": LearningStyle.AUDITORY,
    "aural": LearningStyle.AUDITORY,
    "kinesthetic": LearningStyle.KINESTHETIC,
    "tactile": LearningStyle.KINESTHETIC,
    "reading_writing": LearningStyle.READING_WRITING,
    "reading/writing": LearningStyle.READING_WRITING,
    "reading-writing": LearningStyle.READING_WRITING,
    "reading": LearningStyle.READING_WRITING,
    "logical": LearningStyle.LOGICAL,
    "logical/mathematical": LearningStyle.LOGICAL,
    "mathematical": LearningStyle.LOGICAL,
    "social": LearningStyle.SOCIAL,
    "social/interpersonal": LearningStyle.SOCIAL,
    "interpersonal": LearningStyle.SOCIAL,
    "solitary": LearningStyle.SOLITARY,
    "solitary/intrapersonal": LearningStyle.SOLITARY,
    "intrapersonal": LearningStyle.SOLITARY,
}


def normalize_learning_style(value: Optional[str]) -> Optional[LearningStyle]:
    """Map a free-text learning style tag to ``LearningStyle`` (None if unknown)."""
    if not value:
        return None
    return _STYLE_ALIASES.get(value.strip().lower().replace(" ", "_"))


# =============================================================================
# Directive templates
# =============================================================================

STYLE_DIRECTIVES: Dict[LearningStyle, Tuple[str, ...]] = {
    LearningStyle.VISUAL: (
        "MANDATORY: include an SVG diagram in every response that introduces or explains a concept.",
        "Use colour, spatial layout and labelled arrows to show relationships.",
        "Describe what the learner should look at in the diagram, step by step.",
    ),
    LearningStyle.AUDITORY: (
        "Use rhythmic repetition: restate the key idea in the same short phrase at least twice.",
        "Use verbal cues such as 'Listen for...' and 'Say it with me...'.",
        "Favour mnemonics, rhymes and spoken patterns over visual layouts.",
    ),
    LearningStyle.KINESTHETIC: (
        "Frame explanations around physical actions the learner can perform.",
        "Suggest a hands-on mini-activity using everyday objects.",
        "Use movement and manipulation metaphors (build, move, stack, split).",
    ),
    LearningStyle.READING_WRITING: (
        "Provide written definitions and bullet-point summaries.",
        "Ask the learner to write the idea in their own words.",
        "Include short written examples the learner can re-read.",
    ),
    LearningStyle.LOGICAL: (
        "Present ideas as cause and effect chains or numbered rules.",
        "Show the underlying pattern or formula before concrete cases.",
        "Invite the learner to predict the next step and justify it.",
    ),
    LearningStyle.SOCIAL: (
        "Frame problems as conversations or scenarios involving other people.",
        "Ask the learner to explain the idea as if teaching a friend.",
    ),
    LearningStyle.SOLITARY: (
        "Give the learner quiet reflection prompts before asking for answers.",
        "Connect new ideas to the learner's personal goals and experiences.",
    ),
}

# (exclusive upper bound on mastery, directive)
SCAFFOLDING_LADDER: Tuple[Tuple[float, str], ...] = (
    (80.0, "Check understanding with one short question before introducing anything new."),
    (50.0, "SIMPLIFY: use short sentences and everyday vocabulary."),
    (50.0, "Break every new idea into small numbered steps and confirm each step."),
    (50.0, "Give a fully worked example before asking the learner to try."),
    (30.0, "Slow down: revisit prerequisite ideas before the current objective."),
    (30.0, "Offer the first step of each problem as a hint."),
)

ACCELERATION_DIRECTIVES: Tuple[str, ...] = (
    "ACCELERATE: skip routine practice the learner has already shown they can do.",
    "Offer an extension challenge that applies the idea in a new context.",
)

STANDARD_DIRECTIVES: Tuple[str, ...] = (
    "Keep a steady pace: one idea, one example, one practice question.",
)

SCAFFOLDING_LEVEL_DIRECTIVES: Dict[str, Tuple[str, ...]] = {
    "high": (
        "The learner is struggling often: be very encouraging and normalise mistakes.",
        "Praise effort specifically before correcting.",
    ),
    "moderate": (
        "Offer encouragement after each attempt and point out what went right.",
    ),
    "minimal": (),
}

HIGH_MASTERY = 80.0
LOW_MASTERY = 50.0
VERY_LOW_MASTERY = 30.0
HIGH_STRUGGLE_RATIO = 0.4
MODERATE_STRUGGLE_RATIO = 0.2


class AdaptiveDirectives(BaseModel):
    """Structured directive set for one turn."""

    model_config = ConfigDict(frozen=True)

    difficulty_level: str
    scaffolding_level: str
    encouragement_level: str
    learning_style: Optional[LearningStyle] = None
    style_directives: Tuple[str, ...] = ()
    mastery_directives: Tuple[str, ...] = ()
    scaffolding_directives: Tuple[str, ...] = ()
    topic_directives: Tuple[str, ...] = ()
    phase_guidance: Tuple[str, ...] = ()

    @property
    def directives(self) -> List[str]:
        """All directives in prompt order."""
        return [
            *self.style_directives,
            *self.mastery_directives,
            *self.scaffolding_directives,
            *self.topic_directives,
            *self.phase_guidance,
        ]


# =============================================================================
# Pure helpers
# =============================================================================

def difficulty_for(mastery_score: float) -> str:
    if mastery_score >= HIGH_MASTERY:
        return "accelerated"
    if mastery_score < LOW_MASTERY:
        return "simplified"
    return "standard"


def scaffolding_level_for(struggle_ratio: float) -> str:
    if struggle_ratio > HIGH_STRUGGLE_RATIO:
        return "high"
    if struggle_ratio > MODERATE_STRUGGLE_RATIO:
        return "moderate"
    return "minimal"


def encouragement_for(scaffolding_level: str) -> str:
    return {"high": "high", "moderate": "standard"}.get(scaffolding_level, "minimal")


def mastery_directives_for(mastery_score: float) -> List[str]:
    """Scaffolding ladder plus tier directives for a mastery score (0-100)."""
    score = max(0.0, min(100.0, float(mastery_score)))
    directives = [text for bound, text in SCAFFOLDING_LADDER if score < bound]
    if score >= HIGH_MASTERY:
        directives.extend(ACCELERATION_DIRECTIVES)
    elif score >= LOW_MASTERY:
        directives.extend(STANDARD_DIRECTIVES)
    return directives


def _unique(topics: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for topic in topics:
        topic = (topic or "").strip()
        if topic and topic not in seen:
            seen[topic] = None
    return list(seen)


def topic_directives_for(struggles: Sequence[str], strengths: Sequence[str]) -> List[str]:
    directives = []
    struggle_topics = _unique(struggles)
    strength_topics = _unique(strengths)
    if struggle_topics:
        directives.append(
            f"Known struggles: {', '.join(struggle_topics)}. Revisit these gently and check for the same misconception."
        )
    if strength_topics:
        directives.append(
            f"Known strengths: {', '.join(strength_topics)}. Build analogies on these to introduce new ideas."
        )
    return directives


def phase_guidance_for(mastery_score: float, struggle_ratio: float) -> List[str]:
    guidance = []
    if mastery_score >= HIGH_MASTERY and struggle_ratio < MODERATE_STRUGGLE_RATIO:
        guidance.append("Phase guidance: the learner may skip ahead to application and assessment phases.")
    if mastery_score < VERY_LOW_MASTERY:
        guidance.append("Phase guidance: stay in the explanation phase longer and use extra examples.")
    if struggle_ratio > HIGH_STRUGGLE_RATIO and mastery_score >= LOW_MASTERY:
        guidance.append("Phase guidance: focus on correcting specific errors rather than re-teaching the whole idea.")
    return guidance


# =============================================================================
# Public API
# =============================================================================

def build_adaptive_directives(
    learning_style: Optional[str],
    mastery_score: float,
    struggles: Sequence[str] = (),
    strengths: Sequence[str] = (),
    struggle_ratio: float = 0.0,
) -> AdaptiveDirectives:
    """
    Build the full directive set for one turn.

    Args:
        learning_style: Profile learning-style tag (free text, normalised)
        mastery_score: Current mastery 0-100
        struggles: Topics the learner struggles with
        strengths: Topics the learner is strong in
        struggle_ratio: Share of recent evidence that signals struggle (0-1)

    Returns:
        AdaptiveDirectives with every section populated
    """
    style = normalize_learning_style(learning_style)
    scaffolding = scaffolding_level_for(struggle_ratio)

    return AdaptiveDirectives(
        difficulty_level=difficulty_for(mastery_score),
        scaffolding_level=scaffolding,
        encouragement_level=encouragement_for(scaffolding),
        learning_style=style,
        style_directives=STYLE_DIRECTIVES.get(style, ()) if style else (),
        mastery_directives=tuple(mastery_directives_for(mastery_score)),
        scaffolding_directives=SCAFFOLDING_LEVEL_DIRECTIVES[scaffolding],
        topic_directives=tuple(topic_directives_for(struggles, strengths)),
        phase_guidance=tuple(phase_guidance_for(mastery_score, struggle_ratio)),
    )


def generate_directives(
    learning_style: Optional[str],
    mastery_score: float,
    struggles: Sequence[str] = (),
    strengths: Sequence[str] = (),
    struggle_ratio: float = 0.0,
) -> List[str]:
    """Ordered list of directive strings for the given learner state."""
    return build_adaptive_directives(
        learning_style, mastery_score, struggles, strengths, struggle_ratio
    ).directives


def format_directives_for_prompt(directives: AdaptiveDirectives) -> str:
    """Render a directive set as a prompt section."""
    lines = [
        "ADAPTIVE TEACHING DIRECTIVES (follow these exactly):",
        f"- Difficulty: {directives.difficulty_level}",
        f"- Scaffolding: {directives.scaffolding_level} (encouragement: {directives.encouragement_level})",
    ]
    if directives.learning_style:
        lines.append(f"- Learning style: {directives.learning_style.value}")
    lines.extend(f"- {text}" for text in directives.directives)
    return "\n".join(lines)
