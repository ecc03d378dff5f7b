import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping
from loguru import logger


@dataclass
class ErrorInfo:
    message: str
    level: str = "ERROR"
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, e: BaseException, message: str | None = None, level: str = "ERROR", **context: Any) -> "ErrorInfo":
        frames = traceback.extract_tb(e.__traceback__)
        last = frames[-1] if frames else None
        context["exception"] = {
            "kind": type(e).__name__,
            "message": str(e),
            "file": last.filename if last else None,
            "line": last.lineno if last else None,
            "trace": "".join(traceback.format_exception(type(e), e, e.__traceback__)),
        }
        return cls(message=message or str(e), level=level, context=context)


@dataclass
class Response:
    status: bool
    error: ErrorInfo | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def has_error(self) -> bool:
        return self.error is not None


def _labels(context: Any) -> tuple[str, str]:
    if isinstance(context, Mapping):
        return str(context.get("client", "")), str(context.get("backend", ""))
    return getattr(context, "client_name", ""), getattr(context, "backend_name", "")


def try_response(context: Any, fn: Callable[[], Response], action: str) -> Response:
    """
    Run an action body and turn any fault into Response(status=False).

    Callers branch on Response.status only; nothing raised inside fn escapes.
    """
    try:
        return fn()
    except Exception as e:
        client, backend = _labels(context)
        frames = traceback.extract_tb(e.__traceback__)
        where = f"{frames[-1].filename}:{frames[-1].lineno}" if frames else "unknown"
        message = f"Unhandled exception was thrown during '{client}: {backend}' {action}. '{e}' at '{where}'."
        logger.warning(message)
        return Response(
            status=False,
            error=ErrorInfo.from_exception(e, message=message, level="WARNING", action=action, client=client, backend=backend),
        )
