import json
from datetime import datetime, timezone
from typing import Optional

from gateway.core.logger import logger


def log_auth_attempt(
    method: str,
    result: str,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    endpoint: Optional[str] = None,
    request_id: Optional[str] = None,
) -> None:
    """
    Audit line for a webhook authentication attempt.
    """
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": "webhook_auth",
        "method": method,
        "result": result,
        "ip": ip,
        "user_agent": (user_agent or "")[:200],  # Truncate long agents
        "endpoint": endpoint,
        "request_id": request_id,
    }

    # Rejections are expected adversarial traffic, not operational failures
    if result == "ok":
        logger.debug(json.dumps(log_data))
    else:
        logger.info(json.dumps(log_data))
