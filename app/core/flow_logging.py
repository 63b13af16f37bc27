import logging

from app.core.config import settings

# Per-category switches; categories not listed follow FLOW_LOGS_ENABLED alone.
_CATEGORY_SWITCHES = {
    "inbound": "FLOW_LOGS_INBOUND_ENABLED",
    "labels": "FLOW_LOGS_LABELS_ENABLED",
}


def flow_logs_enabled(category: str | None = None) -> bool:
    if not settings.FLOW_LOGS_ENABLED:
        return False
    switch = _CATEGORY_SWITCHES.get(category or "")
    return bool(getattr(settings, switch)) if switch else True


def flow_info(
    logger: logging.Logger,
    msg: str,
    *args,
    category: str | None = None,
    **kwargs,
) -> None:
    """Workflow trace line, muted per category through settings."""
    if flow_logs_enabled(category):
        logger.info(msg, *args, **kwargs)
