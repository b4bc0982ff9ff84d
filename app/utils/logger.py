import json
import logging
import os
import re
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional


LOGGER_NAME = "messenger-relay"
DEFAULT_LOG_PATH = "logs/relay.log"


def setup_logger() -> logging.Logger:
    """
    初始化结构化日志记录器，支持控制台与文件持久化。

    输入：
        无（从环境变量读取配置）

    输出：
        logging.Logger：配置好的日志记录器。

    关键逻辑：
        - 标准输出：始终输出到 stdout，统一格式包含时间、等级、消息；
        - 文件持久化（可选）：当 `LOG_TO_FILE=1` 时，使用按大小滚动的文件记录；
          配置项：
            - LOG_FILE_PATH：日志文件路径，默认 `logs/relay.log`；
            - LOG_MAX_BYTES：单文件最大字节数，默认 10_485_760（10MB）；
            - LOG_BACKUP_COUNT：保留滚动文件个数，默认 5；
        - 重复调用直接返回已配置的记录器。
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level_value = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level_value)
    console.setFormatter(formatter)
    logger.addHandler(console)

    to_file = os.environ.get("LOG_TO_FILE", "0") == "1"
    log_path = os.environ.get("LOG_FILE_PATH", DEFAULT_LOG_PATH)
    if to_file:
        max_bytes = int(os.environ.get("LOG_MAX_BYTES", "10485760"))
        backup_count = int(os.environ.get("LOG_BACKUP_COUNT", "5"))
        try:
            log_dir = os.path.dirname(log_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
            file_handler.setLevel(level_value)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            # 文件句柄创建失败时，退回仅控制台输出
            logger.warning(f"logger.file.unavailable | path={log_path} error={e}")

    logger.setLevel(level_value)
    logger.propagate = False
    log_json(
        logger,
        logging.INFO,
        "logger.init",
        log_level=level_name,
        to_file=to_file,
        path=log_path if to_file else None,
        content=get_content_log_config(),
    )
    return logger


def log_json(logger: logging.Logger, level: int, message: str, **kwargs: Any) -> None:
    """
    以 JSON 字符串方式记录结构化日志。

    输入：
        logger: 日志记录器实例
        level: 日志级别，如 logging.INFO
        message: 事件名称（如 webhook.received）
        **kwargs: 额外上下文，如 userId、耗时、状态码等

    关键逻辑：
        - 将上下文字典序列化为字符串拼接在消息后，便于后续检索；
        - 不可序列化的值回退为 str()。
    """
    context = json.dumps(kwargs, ensure_ascii=False, default=str)
    logger.log(level, f"{message} | {context}")


def get_content_log_config() -> Dict[str, Any]:
    """
    读取内容日志相关配置。

    输出：
        Dict：
          - include_input: bool 是否记录用户输入预览
          - include_output: bool 是否记录模型回复预览
          - max_chars: int 单条内容最大记录字符数
          - redact: bool 是否启用基础脱敏
    """
    include_input = os.environ.get("LOG_INCLUDE_INPUT", "0") == "1"
    include_output = os.environ.get("LOG_INCLUDE_OUTPUT", "0") == "1"
    try:
        max_chars = int(os.environ.get("LOG_CONTENT_MAX_CHARS", "1000"))
    except ValueError:
        max_chars = 1000
    redact = os.environ.get("LOG_REDACT_ENABLED", "0") == "1"
    return {
        "include_input": include_input,
        "include_output": include_output,
        "max_chars": max_chars,
        "redact": redact,
    }


_EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_PATTERN = re.compile(r"\b(\+?\d[\d\- ]{7,}\d)\b")
_SECRET_PATTERN = re.compile(r"(?i)\b(api[_-]?key|access[_-]?token|token|secret|password)\b\s*[:=]\s*([A-Za-z0-9\-_/]{8,})")


def _mask_email(m: re.Match) -> str:
    v = m.group(0)
    name, _, domain = v.partition("@")
    masked_name = (name[0] + "***") if name else "***"
    masked_domain = (domain.split(".")[0][:1] + "***") if domain else "***"
    return f"{masked_name}@{masked_domain}"


def redact_text(text: str) -> str:
    """
    基础脱敏处理：邮箱、手机号、疑似密钥。

    关键逻辑：
        - 邮箱：保留用户名首字符与域名首字符，其余以 * 替代；
        - 手机号/长数字串：保留前三位与末两位；
        - apiKey/token/secret/password 键名后的值整体遮蔽。
    """
    text = _EMAIL_PATTERN.sub(_mask_email, text)
    text = _PHONE_PATTERN.sub(lambda m: m.group(0)[:3] + "***" + m.group(0)[-2:], text)
    text = _SECRET_PATTERN.sub(lambda m: m.group(1) + "=***", text)
    return text


def build_preview(text: Optional[str], max_chars: int, redact: bool) -> Dict[str, Any]:
    """
    构造内容预览，包含长度与截断后片段。

    输出：
        Dict：{"text_len": int, "preview": str}
    """
    if not text:
        return {"text_len": 0, "preview": ""}
    src = redact_text(text) if redact else text
    if len(src) > max_chars:
        return {"text_len": len(text), "preview": src[:max_chars] + "…(truncated)"}
    return {"text_len": len(text), "preview": src}


def write_user_log(user_id: Optional[str], level: str, message: str, payload: Dict[str, Any]) -> None:
    """
    将指定事件写入用户级独立日志文件。

    输入：
        user_id: 用户ID（为空则不写入）
        level: 文本级别（如 "INFO"、"ERROR"）
        message: 事件名称（如 relay.reply.sent）
        payload: 结构化上下文字典（将以 JSON 写入）

    输出：
        无，写入到 `<USER_LOG_BASE_DIR>/<userId>/<userId>.log`。

    关键逻辑：
        - 受环境变量 `USER_LOG_ENABLED` 控制，默认关闭；
        - 路径可通过 `USER_LOG_BASE_DIR` 配置，默认 `logs/users`；
        - 写入失败只记录警告，不影响主流程。
    """
    if not user_id or os.environ.get("USER_LOG_ENABLED", "0") != "1":
        return
    base_dir = os.environ.get("USER_LOG_BASE_DIR", "logs/users")
    target_dir = os.path.join(base_dir, user_id)
    target_file = os.path.join(target_dir, f"{user_id}.log")
    ts = datetime.now().astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")
    line = f"{ts} {level} {message} | " + json.dumps(payload, ensure_ascii=False, default=str)
    try:
        os.makedirs(target_dir, exist_ok=True)
        with open(target_file, "a", encoding="utf-8") as f:
            f.write(line + "\n")
    except OSError as e:
        logging.getLogger(LOGGER_NAME).warning(f"user.log.write_failed | path={target_file} error={e}")
