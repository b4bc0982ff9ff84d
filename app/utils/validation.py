import re


MIN_MESSAGE_LENGTH = 2

# emoji、常见符号与空白；整条消息只由这些字符组成时视为无效输入
_ONLY_EMOJI_OR_SYMBOLS = re.compile(
    "^[\U0001F300-\U0001FAFF\u2600-\u26FF\u2700-\u27BF\uFE0F\u200D\\s"
    r"!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?~`]*$"
)
_REPEATED_CHAR = re.compile(r"^(.)\1{4,}$", re.DOTALL)


def is_valid_message(text: str) -> bool:
    """
    判断用户输入是否值得转发给模型。

    无效输入：
        - 去空白后少于 2 个字符；
        - 只包含 emoji / 符号；
        - 同一字符重复 5 次以上（如 "aaaaa"）；
        - 不含任何字母（任意文字系统）。
    """
    trimmed = text.strip()
    if len(trimmed) < MIN_MESSAGE_LENGTH:
        return False
    if _ONLY_EMOJI_OR_SYMBOLS.match(trimmed):
        return False
    if _REPEATED_CHAR.match(trimmed):
        return False
    return any(ch.isalpha() for ch in trimmed)
