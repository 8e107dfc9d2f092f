import logging
from typing import Any, Dict, Optional

import requests
from airflow.models import Variable

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000  # Discord message hard limit (approx)


def _truncate_for_discord(text: str, limit: int = DISCORD_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 20] + "\n… (truncated)"


def format_failure_message(result: Dict[str, Any], run_label: str = "") -> Optional[str]:
    """
    Discord message for a SyncResult.as_dict() payload, or None when nothing failed.
    """
    failed = [t for t in result.get("tables", []) if t.get("state") == "failed"]
    if not failed and not result.get("cancelled"):
        return None
    header = f"❗️ **PostgreSQL → DuckDB {result.get('mode', '')} sync failed**"
    if run_label:
        header += f" ({run_label})"
    lines = [header]
    for t in failed:
        lines.append(
            f"- `{t.get('source_table')}` → `{t.get('target_table')}` "
            f"[{t.get('error_code')}] during {t.get('failed_phase')}: {t.get('error')}"
        )
    if result.get("cancelled"):
        lines.append("- Run was cancelled before all tables started")
    lines.append(
        f"- Rows written: {result.get('total_rows_written', 0)}, marked: {result.get('total_rows_marked', 0)}"
    )
    return "\n".join(lines)


def send_discord_alert(message: str, username: Optional[str] = "DuckDB Sync Alert",
                       avatar_url: Optional[str] = None) -> bool:
    """
    Sends a simple Discord webhook message. Expects Airflow Variable 'DISCORD_WEBHOOK'.
    Returns True when Discord accepted the message (204, or 200 with '?wait=true').
    """
    webhook_url: str = Variable.get("DISCORD_WEBHOOK", default_var="")
    if not webhook_url:
        log.warning("No Discord webhook URL configured (Variable 'DISCORD_WEBHOOK'), skipping alert.")
        return False

    payload = {
        "content": _truncate_for_discord(message),
        "username": username,
    }
    if avatar_url:
        payload["avatar_url"] = avatar_url

    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        log.exception("Exception while sending Discord alert: %s", e)
        return False

    if response.status_code in (200, 204):
        log.info("Discord alert sent successfully (status %s).", response.status_code)
        return True
    log.error("Failed to send Discord alert: status=%s body=%s", response.status_code, response.text)
    return False
