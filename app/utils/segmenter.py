import re
from typing import List


PARAGRAPH_SEPARATOR = "\n\n"
# 句子 = 非终止符序列 + 连续终止符；末尾无终止符的残句单独成段
_SENTENCE_PATTERN = re.compile(r"[^.!?。！？]*[.!?。！？]+|[^.!?。！？]+")
_WHITESPACE = (" ", "\n", "\t")


def split_sentences(paragraph: str) -> List[str]:
    """
    将段落切分为句子片段。

    输出：
        List[str]：依次拼接即还原原段落（句间空白归属于后一句的开头）。
    """
    return _SENTENCE_PATTERN.findall(paragraph)


def _hard_split(piece: str, max_length: int) -> List[str]:
    # 单句超长：优先在限制内最后一个空白处切开，没有空白则按长度硬切
    parts: List[str] = []
    while len(piece) > max_length:
        cut = max(piece.rfind(ch, 1, max_length + 1) for ch in _WHITESPACE)
        if cut <= 0:
            cut = max_length
        parts.append(piece[:cut])
        piece = piece[cut:]
    if piece:
        parts.append(piece)
    return parts


def split_message(text: str, max_length: int = 2000) -> List[str]:
    """
    按平台单条消息长度限制切分文本。

    输入：
        text: 待发送文本
        max_length: 单条消息最大字符数，默认 2000（Messenger 限制）

    输出：
        List[str]：每段不超过 max_length；未超长时原样返回 [text]。

    关键逻辑：
        - 先按空行（段落）切分，超长段落再按句子切分；
        - 依次拼装，直到再加一段就会超限为止，绝不在句中切断；
        - 只有单句本身超过限制时，才退化为按空白/长度硬切；
        - 每段去掉首尾空白，去掉空白后的拼接结果与原文一致。
    """
    if len(text) <= max_length:
        return [text]

    chunks: List[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        chunk = current.strip()
        if chunk:
            chunks.append(chunk)
        current = ""

    for paragraph in text.split(PARAGRAPH_SEPARATOR):
        if len(paragraph) <= max_length:
            pieces = [paragraph]
        else:
            pieces = []
            for sentence in split_sentences(paragraph):
                if len(sentence) > max_length:
                    pieces.extend(_hard_split(sentence, max_length))
                else:
                    pieces.append(sentence)

        for i, piece in enumerate(pieces):
            joiner = PARAGRAPH_SEPARATOR if i == 0 and current else ""
            if len(current) + len(joiner) + len(piece) <= max_length:
                current += joiner + piece
            else:
                flush()
                current = piece.lstrip()
    flush()
    return chunks
