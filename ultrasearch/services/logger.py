"""Loguru setup and the structured log helpers used across a chat turn.

Every helper emits one record tagged with ``kind`` (``llm``, ``pipeline``,
``tool``, ``db`` or ``event``) and carries its fields in ``extra``; the
file sink writes them beside each message.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from ultrasearch.config import settings

NOISY_LOGGERS = (
    "uvicorn.access",
    "sse_starlette.sse",
    "httpx",
    "httpcore",
    "openai._base_client",
    "anthropic._base_client",
    "asyncpg",
)


def _console_format(record) -> str:
    kind = record["extra"].get("kind")
    prefix = f"<magenta>[{kind}]</magenta> " if kind else ""
    return (
        "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{line}</cyan> - " + prefix + "<level>{message}</level>\n{exception}"
    )


logger.remove()
logger.add(sys.stderr, format=_console_format, level=settings.app_log_level.upper(), colorize=True)

_log_dir = Path(settings.log_dir)
_log_dir.mkdir(parents=True, exist_ok=True)
logger.add(
    _log_dir / "ultrasearch_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} | {extra} - {message}",
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
)

for _name in NOISY_LOGGERS:
    logging.getLogger(_name).setLevel(settings.noisy_log_level.upper())


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log one generation or stream against a provider model."""
    bound = logger.bind(
        kind="llm",
        model=model,
        caller=caller,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        duration_ms=duration_ms,
        status=status,
    )
    if error:
        bound.error(f"{caller} -> {model} failed after {duration_ms}ms: {error}")
    else:
        bound.info(f"{caller} -> {model} {status} ({input_tokens}+{output_tokens} tokens, {duration_ms}ms)")


def log_pipeline_step(
    chat_id: str,
    step_type: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """Log a pipeline step (tool selection, ultra stage, finish)."""
    bound = logger.bind(kind="pipeline", chat_id=chat_id, step=step_type, status=status, data=data or {})
    if status in ("failed", "cancelled"):
        bound.warning(f"{chat_id} {step_type} {status} {data or ''}".rstrip())
    else:
        bound.info(f"{chat_id} {step_type} {status}")


def log_tool_call(
    tool: str,
    duration_ms: int,
    error: Optional[str] = None,
) -> None:
    bound = logger.bind(kind="tool", tool=tool, duration_ms=duration_ms, error=error)
    if error:
        bound.warning(f"{tool} failed after {duration_ms}ms: {error}")
    else:
        bound.info(f"{tool} ok ({duration_ms}ms)")


def log_db_operation(
    operation: str,
    table: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a chat store read or write."""
    bound = logger.bind(kind="db", operation=operation, table=table, status=status, details=details)
    if error:
        bound.error(f"{operation} {table} failed: {error}")
    else:
        bound.debug(f"{operation} {table} {status} {details or ''}".rstrip())


def log_event(event_type: str, message: str, **kwargs) -> None:
    logger.bind(kind="event", event_type=event_type, **kwargs).info(message)
