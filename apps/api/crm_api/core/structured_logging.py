"""Structured logging helpers (secret-safe)."""

import logging
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def build_log_context(
    *,
    org_id: str | None = None,
    account_id: str | None = None,
    token_ref: str | None = None,
    job_id: str | None = None,
    job_type: str | None = None,
    action: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict that never carries secrets or token values."""
    context: dict[str, Any] = {}
    if org_id:
        context["org_id"] = str(org_id)
    if account_id:
        context["account_id"] = str(account_id)
    if token_ref:
        context["token_ref"] = token_ref
    if job_id:
        context["job_id"] = str(job_id)
    if job_type:
        context["job_type"] = job_type
    if action:
        context["action"] = action
    if correlation_id:
        context["correlation_id"] = correlation_id
    return context


def configure_logging(level: int = logging.INFO) -> None:
    """Basic process logging for the API and worker entrypoints."""
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
