from datetime import datetime
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from app.types import QuickReplyOption


SYSTEM_PROMPT_TEMPLATE = (
    "You are a helpful AI assistant chatting with people on Facebook Messenger. "
    "Today is {date}, {time} ({timezone} time).\n\n"
    "Keep responses helpful, friendly and conversational. Avoid markdown tables and headings, "
    "Messenger shows plain text. Answer in the same language the user writes in. "
    "If asked about real-time information (sports scores, weather, live news) and no live data "
    "is provided below, politely say you can't access live data and suggest checking official sources."
)

LIVE_DATA_HEADING = "Live data fetched just now (use it to answer, cite it as current):"


def build_system_prompt(now: Optional[datetime] = None, timezone: str = "Asia/Baghdad") -> str:
    """
    构建系统提示词，嵌入显示时区下的当前日期与时间。

    输入：
        now: 当前时间（带时区；为空时取当前时间）
        timezone: 显示时区（IANA 名称）
    """
    tz = ZoneInfo(timezone)
    local = (now or datetime.now(tz)).astimezone(tz)
    return SYSTEM_PROMPT_TEMPLATE.format(
        date=f"{local:%A, %B} {local.day}, {local.year}",
        time=f"{local:%I:%M %p}",
        timezone=timezone,
    )


def _qr(*pairs: Tuple[str, str]) -> List[QuickReplyOption]:
    return [QuickReplyOption(title=title, payload=payload) for title, payload in pairs]


FOLLOW_UP_REPLIES = _qr(
    ("Ask another question", "CONTINUE"),
    ("Main Menu", "MAIN_MENU"),
    ("Help", "HELP"),
)

APOLOGY_TEXT = "Oops! Something went wrong. 😔 Let's try again!"
APOLOGY_REPLIES = _qr(
    ("Retry", "START_CHAT"),
    ("Main Menu", "MAIN_MENU"),
    ("Get Help", "HELP"),
)

INVALID_INPUT_TEXT = "I didn't quite catch that! 🤔 Try asking me something like:"
INVALID_INPUT_REPLIES = _qr(
    ("What can you do?", "ABOUT_BOT"),
    ("Ask a question", "START_CHAT"),
    ("Get help", "HELP"),
)

RESET_KEYWORDS = frozenset({"reset", "/reset", "clear", "new chat", "start over"})
RESET_TEXT = "🧹 Done! I've cleared our conversation. What would you like to talk about?"
RESET_REPLIES = _qr(
    ("Ask a question", "START_CHAT"),
    ("See examples", "EXAMPLES"),
)


# 按钮 payload -> (回复文本, 快捷回复)
POSTBACK_RESPONSES: Dict[str, Tuple[str, List[QuickReplyOption]]] = {
    "GET_STARTED": (
        "👋 Welcome! I'm your AI assistant.\n\n"
        "I can help you with:\n✅ Answering questions\n✅ Explaining concepts\n"
        "✅ Having conversations\n✅ Weather and football updates\n\nWhat would you like to know?",
        _qr(("What can you do?", "ABOUT_BOT"), ("Start chatting", "START_CHAT"), ("Get help", "HELP")),
    ),
    "ABOUT_BOT": (
        "🤖 I'm an AI assistant living in Messenger!\n\n"
        "I'm good at:\n• General knowledge & facts\n• Detailed explanations\n• Creative writing\n"
        "• Problem-solving\n• Coding help\n• Current weather (\"weather in Baghdad\")\n"
        "• Latest football results (\"score for Arsenal\")\n\nI remember the last few messages of our chat.",
        _qr(("Ask me something", "START_CHAT"), ("See examples", "EXAMPLES"), ("Main Menu", "MAIN_MENU")),
    ),
    "START_CHAT": (
        "Perfect! 😊 I'm ready to help. What's on your mind?",
        _qr(("Example questions", "EXAMPLES"), ("What can you do?", "ABOUT_BOT"), ("Help", "HELP")),
    ),
    "EXAMPLES": (
        "💡 Try asking me:\n\n• \"Explain how photosynthesis works\"\n• \"Write a short story about space\"\n"
        "• \"What's the weather in Erbil?\"\n• \"Latest result for Real Madrid\"\n"
        "• \"Give me tips for learning programming\"\n\nJust type your question!",
        _qr(("Ask a question", "START_CHAT"), ("What can you do?", "ABOUT_BOT"), ("Main Menu", "MAIN_MENU")),
    ),
    "HELP": (
        "🆘 How to use me:\n\n1️⃣ Type your question naturally\n2️⃣ I'll respond with helpful info\n"
        "3️⃣ Ask follow-ups, I remember recent messages\n4️⃣ Type \"reset\" to start a fresh conversation\n\n"
        "What can I help you with?",
        _qr(("Start chatting", "START_CHAT"), ("See examples", "EXAMPLES"), ("Main Menu", "MAIN_MENU")),
    ),
    "MAIN_MENU": (
        "🏠 Main Menu\n\nWhat would you like to do?",
        _qr(
            ("Ask a question", "START_CHAT"),
            ("What can you do?", "ABOUT_BOT"),
            ("See examples", "EXAMPLES"),
            ("Get help", "HELP"),
        ),
    ),
}
POSTBACK_RESPONSES["CONTINUE"] = POSTBACK_RESPONSES["START_CHAT"]

DEFAULT_POSTBACK_RESPONSE = (
    "I'm here to help! What would you like to know?",
    _qr(("Ask a question", "START_CHAT"), ("Main Menu", "MAIN_MENU")),
)


def postback_response(payload: Optional[str]) -> Tuple[str, List[QuickReplyOption]]:
    return POSTBACK_RESPONSES.get(payload or "", DEFAULT_POSTBACK_RESPONSE)


def is_reset_command(text: str) -> bool:
    return text.strip().lower() in RESET_KEYWORDS
