from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from drone_core.errors import CompensationFailedError


T = TypeVar("T")


def commit_or_compensate(
    operation: str,
    *,
    commit: Callable[[], T],
    compensate: Callable[[], Any],
    on_rolled_back: Callable[[Exception], BaseException],
    logger: logging.Logger,
    log_extra: dict[str, Any] | None = None,
) -> T:
    """Run ``commit``; if it fails, run ``compensate`` to undo the forward step.

    After a successful compensation the exception built by ``on_rolled_back``
    is raised. A failing compensation raises CompensationFailedError, which
    callers must not retry automatically.
    """
    extra = {"component": "lifecycle", "operation": operation, **(log_extra or {})}
    try:
        return commit()
    except Exception as exc:
        logger.warning(
            "%s failed after its forward step; compensating: %s",
            operation,
            exc,
            extra={**extra, "result": "compensating", "error_class": type(exc).__name__},
        )
        try:
            compensate()
        except Exception as compensation_exc:
            logger.error(
                "%s compensation failed; manual intervention required: %s",
                operation,
                compensation_exc,
                extra={**extra, "result": "compensation_failed", "error_class": type(compensation_exc).__name__},
            )
            raise CompensationFailedError(
                f"{operation} failed ({exc}) and compensation also failed ({compensation_exc}); "
                "manual intervention is required.",
                operation=operation,
                original_error=str(exc),
            ) from compensation_exc
        logger.info(
            "%s rolled back",
            operation,
            extra={**extra, "result": "rolled_back", "error_class": type(exc).__name__},
        )
        rolled_back = on_rolled_back(exc)
        if rolled_back is exc:
            raise
        raise rolled_back from exc


__all__ = ["commit_or_compensate"]
