"""Prompt templates for the tutoring agents.

This module contains the default agent system prompts, the shared response
format contract, and the templates used by the router, the validator and
the evidence extractor.
"""

from typing import Any, Dict, List, Optional

from .base.utils import truncate_text


# =============================================================================
# RESPONSE FORMAT (shared by every teaching agent)
# =============================================================================

RESPONSE_FORMAT_INSTRUCTIONS = """RESPONSE FORMAT:
Reply with a single JSON object and nothing else:
{
  "audioText": "what will be spoken aloud, plain conversational sentences, no markup",
  "displayText": "what is shown on screen, Markdown and LaTeX allowed",
  "svg": "<svg ...>...</svg> or null",
  "lessonComplete": false,
  "teachingPhase": 1
}
teachingPhase is 1 (introduce), 2 (explain), 3 (guided practice), 4 (independent practice) or 5 (review).
Start audioText with a short complete sentence.
"""


# =============================================================================
# DEFAULT AGENT PROMPTS
# =============================================================================

COORDINATOR_SYSTEM_PROMPT = """You are the coordinator of a team of AI teachers.
You greet the learner, keep the session on track and decide which specialist should teach next.
When you answer the learner yourself, be warm and brief and steer back to the lesson objective.
"""

SPECIALIST_SYSTEM_TEMPLATE = """You are an expert {subject} teacher for young learners.
Teach one small idea at a time, check understanding often and correct misconceptions directly.
Keep explanations accurate for the learner's grade level and follow the lesson curriculum in order.
{extra}"""

ASSESSOR_SYSTEM_PROMPT = """You are the assessor. The lesson's mastery criteria have been met.
Summarise what the learner has shown they can do, ask one final check question and congratulate them.
"""

MOTIVATOR_SYSTEM_PROMPT = """You are the motivator. The learner is frustrated or discouraged.
Acknowledge the feeling, normalise mistakes, suggest a tiny next step and hand back to learning.
"""

VALIDATOR_SYSTEM_PROMPT = """You are an independent reviewer of teaching content.
You never teach. You only judge drafts written by other teachers and reply in JSON.
"""

DEFAULT_AGENT_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "coordinator",
        "role": "router",
        "display_name": "Coordinator",
        "system_prompt": COORDINATOR_SYSTEM_PROMPT,
        "reasoning_effort": "low",
        "capabilities": [],
    },
    {
        "name": "math_specialist",
        "role": "specialist",
        "display_name": "Math Teacher",
        "system_prompt": SPECIALIST_SYSTEM_TEMPLATE.format(
            subject="mathematics",
            extra="Write formulas in LaTeX and show every step of worked examples.\n",
        ),
        "reasoning_effort": "high",
        "capabilities": [],
    },
    {
        "name": "science_specialist",
        "role": "specialist",
        "display_name": "Science Teacher",
        "system_prompt": SPECIALIST_SYSTEM_TEMPLATE.format(
            subject="science",
            extra="Relate ideas to everyday observations and simple experiments.\n",
        ),
        "reasoning_effort": "medium",
        "capabilities": ["web_search"],
    },
    {
        "name": "english_specialist",
        "role": "specialist",
        "display_name": "English Teacher",
        "system_prompt": SPECIALIST_SYSTEM_TEMPLATE.format(
            subject="English language and literature",
            extra="Model correct usage and quote short examples.\n",
        ),
        "reasoning_effort": "high",
        "capabilities": [],
    },
    {
        "name": "history_specialist",
        "role": "specialist",
        "display_name": "History Teacher",
        "system_prompt": SPECIALIST_SYSTEM_TEMPLATE.format(
            subject="history",
            extra="Give dates and sources for factual claims.\n",
        ),
        "reasoning_effort": "high",
        "capabilities": ["web_search"],
    },
    {
        "name": "art_specialist",
        "role": "specialist",
        "display_name": "Art Teacher",
        "system_prompt": SPECIALIST_SYSTEM_TEMPLATE.format(
            subject="art",
            extra="Describe visual techniques concretely and encourage creative attempts.\n",
        ),
        "reasoning_effort": "low",
        "capabilities": [],
    },
    {
        "name": "assessor",
        "role": "assessor",
        "display_name": "Assessor",
        "system_prompt": ASSESSOR_SYSTEM_PROMPT,
        "reasoning_effort": "medium",
        "capabilities": [],
    },
    {
        "name": "motivator",
        "role": "support",
        "display_name": "Motivator",
        "system_prompt": MOTIVATOR_SYSTEM_PROMPT,
        "reasoning_effort": "low",
        "capabilities": [],
    },
    {
        "name": "validator",
        "role": "validator",
        "display_name": "Validator",
        "system_prompt": VALIDATOR_SYSTEM_PROMPT,
        "temperature": 0.0,
        "reasoning_effort": "medium",
        "capabilities": [],
    },
]


# =============================================================================
# CONTEXT CACHE (static system instruction)
# =============================================================================

STATIC_INSTRUCTION_TEMPLATE = """{agent_prompt}

LESSON:
- Title: {title}
- Subject: {subject}
- Grade level: {grade_level}
- Learning objective: {learning_objective}

CURRICULUM:
{curriculum}

TEAM:
{team}

{response_format}"""


def format_curriculum(curriculum: Any) -> str:
    """Render lesson curriculum JSON as numbered steps."""
    if not curriculum:
        return "(no curriculum provided)"
    if isinstance(curriculum, dict):
        steps = curriculum.get("steps") or curriculum.get("sections") or []
        if not steps:
            return "\n".join(f"- {key}: {value}" for key, value in curriculum.items())
        curriculum = steps
    if isinstance(curriculum, list):
        lines = []
        for i, step in enumerate(curriculum, start=1):
            if isinstance(step, dict):
                title = step.get("title") or step.get("name") or f"Step {i}"
                detail = step.get("description") or step.get("content") or ""
                lines.append(f"{i}. {title}" + (f": {detail}" if detail else ""))
            else:
                lines.append(f"{i}. {step}")
        return "\n".join(lines)
    return str(curriculum)


# =============================================================================
# PER-TURN CONTEXT
# =============================================================================

def format_profile_section(profile: Dict[str, Any]) -> str:
    lines = ["STUDENT PROFILE:"]
    if profile.get("name"):
        lines.append(f"- Name: {profile['name']}")
    if profile.get("age"):
        lines.append(f"- Age: {profile['age']}")
    if profile.get("grade_level"):
        lines.append(f"- Grade: {profile['grade_level']}")
    if profile.get("learning_style"):
        lines.append(f"- Learning style: {profile['learning_style']}")
    if profile.get("strengths"):
        lines.append(f"- Strengths: {', '.join(profile['strengths'])}")
    if profile.get("struggles"):
        lines.append(f"- Struggles: {', '.join(profile['struggles'])}")
    return "\n".join(lines)


def format_recent_conversation(history: List[Dict[str, Any]], limit: int = 3) -> str:
    """Last ``limit`` exchanges; tutor replies are cut to 200 characters."""
    if not history:
        return ""
    lines = ["RECENT CONVERSATION:"]
    for item in history[-limit:]:
        if item.get("learner_text"):
            lines.append(f"Student: {item['learner_text']}")
        lines.append(f"Tutor ({item.get('agent', 'tutor')}): {truncate_text(item.get('response_text', ''), 200)}")
    return "\n".join(lines)


SELF_CORRECTION_TEMPLATE = """[SELF-CORRECTION REQUIRED]
In your previous response, you made an error that needs to be corrected.

Your incorrect statement: "{statement}"

Issues found:
{issues}{fixes}

IMPORTANT: Before answering the student's current question, briefly and naturally acknowledge your earlier mistake.
Say something like "Before we continue, I want to correct something I said earlier..." then provide the correct information.
Keep the correction concise and age-appropriate, then continue with the student's current question.
[END SELF-CORRECTION]"""


def format_correction_section(correction: Dict[str, Any]) -> str:
    """Instructions to correct a response that went out with a disclaimer."""
    original = correction.get("original_response") or {}
    issues = "\n".join(f"- {issue}" for issue in correction.get("issues") or []) or "- (not specified)"
    fixes = correction.get("required_fixes") or []
    fix_lines = "\n\nRequired fixes:\n" + "\n".join(f"- {fix}" for fix in fixes) if fixes else ""
    return SELF_CORRECTION_TEMPLATE.format(
        statement=(original.get("display_text") or "")[:300],
        issues=issues,
        fixes=fix_lines,
    )


def build_turn_context(
    profile: Dict[str, Any],
    directives_text: str,
    history: List[Dict[str, Any]],
    lesson: Dict[str, Any],
    handoff_note: Optional[str] = None,
    correction: Optional[Dict[str, Any]] = None,
) -> str:
    """Assemble the dynamic (per-turn) part of a specialist prompt."""
    sections = [format_profile_section(profile)]
    if correction:
        sections.append(format_correction_section(correction))
    if directives_text:
        sections.append(directives_text)
    conversation = format_recent_conversation(history)
    if conversation:
        sections.append(conversation)
    sections.append(
        f"CURRENT LESSON: {lesson.get('title', 'Unknown')} "
        f"({lesson.get('subject', 'general')}, grade {lesson.get('grade_level', '?')})"
    )
    if handoff_note:
        sections.append(f"HANDOFF NOTE FROM COORDINATOR: {handoff_note}")
    return "\n\n".join(sections)


REGENERATION_FEEDBACK_TEMPLATE = """

REVIEWER FEEDBACK: your previous draft was rejected. Write a new response that fixes ALL of these:
{fixes}
"""


def append_required_fixes(prompt: str, fixes: List[str]) -> str:
    fix_lines = "\n".join(f"- {fix}" for fix in fixes) or "- Improve accuracy and clarity."
    return prompt + REGENERATION_FEEDBACK_TEMPLATE.format(fixes=fix_lines)


# =============================================================================
# ROUTER
# =============================================================================

ROUTER_PROMPT_TEMPLATE = """Decide which teacher should handle the learner's message.

LESSON: {lesson_title} ({subject}, grade {grade_level})
CURRENTLY ACTIVE: {active_agent}

AVAILABLE TEACHERS:
{catalogue}
- self: you answer directly (greetings, logistics, off-topic questions)

LEARNER MESSAGE:
{message}

Reply with JSON only:
{{"route_to": "<teacher name or self>", "reason": "<short reason>", "handoff_message": "<one friendly sentence introducing the teacher, or null>", "response": "<your reply when route_to is self, else null>"}}
"""


def format_catalogue(specs: List[Any]) -> str:
    return "\n".join(f"- {spec.name.value}: {spec.display_name}" for spec in specs)


# =============================================================================
# VALIDATOR
# =============================================================================

VALIDATOR_PROMPT_TEMPLATE = """Review this draft written by the {agent} for a grade {grade_level} {subject} lesson.

LESSON: {lesson_title}
LEARNING OBJECTIVE: {learning_objective}

LEARNER SAID:
{learner_text}

DRAFT (spoken):
{audio_text}

DRAFT (on screen):
{display_text}

DRAFT DIAGRAM:
{svg}

Run these five checks:
1. factual_consistency: every fact, number and formula is correct
2. curriculum_alignment: content fits the grade level and the lesson objective
3. internal_consistency: spoken text, screen text and diagram do not contradict each other
4. pedagogical_order: ideas are introduced before they are used
5. diagram_alignment: the diagram (if any) shows what the text describes

Reply with JSON only:
{{"approved": true/false, "confidenceScore": 0.0-1.0, "issues": ["..."], "requiredFixes": ["..."], "checks": {{"factual_consistency": true/false, "curriculum_alignment": true/false, "internal_consistency": true/false, "pedagogical_order": true/false, "diagram_alignment": true/false}}}}
"""

DISCLAIMER_TEXT = (
    "Note: I couldn't fully double-check this explanation. "
    "If something seems off, ask me again or check with your teacher."
)


# =============================================================================
# EVIDENCE EXTRACTOR
# =============================================================================

EVIDENCE_PROMPT_TEMPLATE = """Classify the learner's latest message as evidence of learning.

LESSON: {lesson_title}
LEARNING OBJECTIVE: {learning_objective}

{conversation}

LEARNER'S LATEST MESSAGE:
{learner_text}

Evidence types:
- correct_answer: correctly answers a question
- incorrect_answer: answers a question incorrectly
- explanation: explains a concept in their own words
- application: applies the concept to a new problem or situation
- struggle: expresses confusion, asks for the same help again, or gives up

Reply with JSON only:
{{"evidenceType": "<type>", "qualityScore": 0-100, "confidence": 0.0-1.0, "reasoning": "<one sentence>"}}
"""

SAFE_FALLBACK_TEXT = "Let's keep going. Can you tell me what you're thinking about this step?"

RETRY_LATER_TEXT = "I'm having trouble thinking right now. Please try again in a moment."


# =============================================================================
# TURN PROMPTS
# =============================================================================

SESSION_START_PROMPT = (
    "The student has just opened the lesson. Greet them by name if you know it, "
    "introduce today's lesson in one or two sentences and ask a warm-up question."
)

MEDIA_ONLY_PROMPT = "(The student sent a {modality} message without text. Respond to it.)"
