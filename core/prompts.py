"""
Prompt building for the AI conversation partner.

- AI role text per scenario, or per caller in stress mode
- System prompt with language enforcement and context documents
- Greeting prompt and localized fallbacks for offline / over-quota turns
"""
from __future__ import annotations

from models.schemas import Caller, ConversationContext, Language, Speaker


# ══════════════════════════════════════════════════════════════
#  ROLES
# ══════════════════════════════════════════════════════════════

SCENARIO_ROLES = {
    "crisis-negotiation": "a difficult customer in a crisis situation demanding immediate resolution",
    "sales-objection": "a skeptical prospect raising objections about the product",
    "price-negotiation": "a tough negotiator trying to get the best deal",
    "contract-negotiation": "a business partner negotiating contract terms",
    "closing-deal": "a hesitant buyer who needs convincing to close",
    "customer-complaint": "an angry customer with a serious complaint",
    "refund-request": "a frustrated customer demanding a refund",
    "technical-support": "a confused user with technical issues",
    "service-recovery": "a disappointed customer after a service failure",
    "escalation-handling": "an irate customer demanding to speak to a manager",
    "performance-review": "an employee receiving performance feedback",
    "difficult-conversation": "a colleague in a sensitive workplace discussion",
    "termination-meeting": "an employee being informed of termination",
    "salary-negotiation": "an employee negotiating for a raise",
    "conflict-resolution": "a team member in a workplace conflict",
    "presentation-qa": "an audience member asking challenging questions",
    "investor-pitch": "a skeptical investor evaluating your pitch",
    "board-meeting": "a board member questioning your decisions",
    "team-briefing": "a team member seeking clarification",
    "job-interview": "a hiring manager conducting an interview",
    "media-interview": "a journalist asking probing questions",
    "cold-calling": "a busy prospect receiving an unsolicited call",
    "debt-collection": "a debtor avoiding payment",
    "insurance-claim": "a claimant disputing coverage",
}
DEFAULT_ROLE = "a challenging conversation partner"

MOOD_DESCRIPTIONS = {
    "neutral": "a calm but professional",
    "hostile": "an aggressive and confrontational",
    "frustrated": "a frustrated and impatient",
    "anxious": "a worried and nervous",
    "demanding": "a demanding and assertive",
    "happy": "a friendly but still challenging",
}

CALLER_SCENARIO_DESCRIPTIONS = {
    "complaint": "customer with a complaint",
    "negotiation": "negotiator seeking a better deal",
    "objection": "prospect raising objections",
    "crisis": "person in a crisis situation",
    "inquiry": "person seeking information",
}


def role_for_scenario(scenario: str) -> str:
    return SCENARIO_ROLES.get(scenario, DEFAULT_ROLE)


def role_for_caller(caller: Caller) -> str:
    mood = MOOD_DESCRIPTIONS.get(caller.mood.value, "a challenging")
    scenario = CALLER_SCENARIO_DESCRIPTIONS.get(caller.scenario.value, "conversation partner")
    note = " who is very difficult to handle" if caller.difficulty >= 4 else ""
    return f"{mood} {scenario}{note}"


# ══════════════════════════════════════════════════════════════
#  PROMPTS
# ══════════════════════════════════════════════════════════════

_LANGUAGE_RULES = {
    Language.INDONESIAN: (
        "WAJIB: Anda HARUS merespons HANYA dalam Bahasa Indonesia yang natural. "
        "Jangan gunakan bahasa lain."
    ),
    Language.ENGLISH: (
        "You MUST respond ONLY in natural English. Do not use any other language."
    ),
}

_GREETING_PROMPTS = {
    Language.INDONESIAN: (
        "[MULAI PERCAKAPAN - Buat pernyataan pembuka sebagai karakter Anda untuk "
        "memulai skenario pelatihan. WAJIB dalam Bahasa Indonesia.]"
    ),
    Language.ENGLISH: (
        "[START CONVERSATION - Generate an opening statement as your character to "
        "begin the training scenario. MUST be in English.]"
    ),
}

EMOTION_PROMPT = (
    "Analyze the emotional tone of this text and respond with only one word from "
    "these options: neutral, hostile, happy, frustrated, anxious.\n\n"
    'Text: "{text}"\n\nEmotion:'
)


def build_system_prompt(context: ConversationContext) -> str:
    """System prompt: character, scenario, language rule, reference documents."""
    parts = [
        f"You are role-playing {context.ai_role or role_for_scenario(context.scenario)} "
        f"in a voice training scenario ({context.scenario}).",
        "Stay in character. Keep replies short and spoken: one to three sentences, "
        "no lists, no stage directions, no markdown.",
        "React realistically to how the trainee handles you: soften when they "
        "acknowledge you and handle you well, push harder when they are vague.",
        _LANGUAGE_RULES[context.language],
    ]
    if context.documents:
        parts.append("\nCONTEXT DOCUMENTS (use this information to inform your replies):")
        for i, doc in enumerate(context.documents, 1):
            parts.append(f"\n--- Document {i}: {doc.name} ---\n{doc.content}")
        parts.append("\n--- End of Context Documents ---")
    return "\n".join(parts)


def build_messages(context: ConversationContext, utterance: str) -> list[dict[str, str]]:
    """
    Prior turns as alternating role/content pairs, ending with ``utterance``.
    ``context.history`` holds the turns before this utterance.
    """
    messages: list[dict[str, str]] = []
    for turn in list(context.history) + [None]:
        if turn is None:
            role, text = "user", utterance
        else:
            role = "user" if turn.speaker == Speaker.USER else "assistant"
            text = turn.text
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n" + text
        else:
            messages.append({"role": role, "content": text})
    if messages[0]["role"] == "assistant":
        # the partner spoke first (greeting); keep user-first ordering
        messages.insert(0, {"role": "user", "content": greeting_prompt(context.language)})
    return messages


def greeting_prompt(language: Language) -> str:
    return _GREETING_PROMPTS[language]


# ══════════════════════════════════════════════════════════════
#  FALLBACKS
# ══════════════════════════════════════════════════════════════

_FALLBACK_GREETINGS = {
    Language.INDONESIAN: "Selamat datang. Bagaimana saya bisa membantu Anda hari ini?",
    Language.ENGLISH: "Welcome. How can I help you today?",
}

_FALLBACK_RESPONSES = {
    Language.INDONESIAN: "Saya mengerti. Silakan lanjutkan.",
    Language.ENGLISH: "I understand. Please continue.",
}

_CANNED_REPLIES = {
    Language.INDONESIAN: (
        "Saya mengerti kekhawatiran Anda. Mari kita pikirkan situasi ini.",
        "Itu poin yang menarik. Bagaimana Anda akan menangani ini secara berbeda?",
        "Saya paham maksud Anda. Apa langkah selanjutnya?",
        "Izinkan saya mengklarifikasi sesuatu tentang situasi ini.",
        "Saya menghargai perspektif Anda. Bisakah Anda jelaskan lebih lanjut?",
    ),
    Language.ENGLISH: (
        "I understand your concern. Let me think about this situation.",
        "That's an interesting point. How would you handle this differently?",
        "I see what you're saying. What's your next step here?",
        "Let me clarify something with you about this situation.",
        "I appreciate your perspective. Can you elaborate on that?",
    ),
}


def fallback_greeting(language: Language) -> str:
    return _FALLBACK_GREETINGS[Language(language)]


def fallback_response(language: Language) -> str:
    return _FALLBACK_RESPONSES[Language(language)]


def canned_replies(language: Language) -> tuple[str, ...]:
    return _CANNED_REPLIES[Language(language)]
