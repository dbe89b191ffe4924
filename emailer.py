import os
import html
import smtplib
import socket
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from config import EMAIL_CONFIG, ADMIN_EMAILS, LOG_DIR, LOG_FILE, ENV
from logger import get_logger

log = get_logger("emailer")

RUN_START_MARKER = "===== SYNC RUN START:"
RUN_END_MARKER = "===== SYNC RUN END:"


def send_email(to_addrs: List[str], subject: str, html_body: str) -> None:
    if not to_addrs:
        log.warning("No recipients for email; skipping.")
        return

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = EMAIL_CONFIG["from_addr"]
    msg["To"] = ", ".join(to_addrs)

    msg.attach(MIMEText(html_body, "html"))

    try:
        with smtplib.SMTP(EMAIL_CONFIG["smtp_server"], EMAIL_CONFIG["smtp_port"]) as server:
            server.starttls()
            if EMAIL_CONFIG["smtp_password"]:
                server.login(EMAIL_CONFIG["smtp_username"], EMAIL_CONFIG["smtp_password"])
            server.sendmail(msg["From"], to_addrs, msg.as_string())
        log.info(f"Email sent: {subject} -> {to_addrs}")
    except (smtplib.SMTPException, OSError) as e:
        log.error(f"Failed sending email: {e}")


def extract_last_run_block(log_file: str, max_lines: int = 2000) -> str:
    """
    Most recent START..END block from the sync log.
    Falls back to the last 200 lines when no marker is present.
    """
    try:
        with open(log_file, "r", encoding="utf-8", errors="ignore") as f:
            lines = f.readlines()
    except OSError as e:
        return f"(Could not read log file: {e})"

    if not lines:
        return "(Log file empty)"

    start_idx = None
    for i in range(len(lines) - 1, -1, -1):
        if RUN_START_MARKER in lines[i]:
            start_idx = i
            break

    if start_idx is None:
        return "".join(lines[-200:])

    end_idx = len(lines) - 1
    for j in range(start_idx, len(lines)):
        if RUN_END_MARKER in lines[j]:
            end_idx = j
            break

    chunk = lines[start_idx:end_idx + 1]
    if len(chunk) > max_lines:
        chunk = chunk[-max_lines:]
    return "".join(chunk)


def send_sync_failure_alert(
    run_id: str,
    error: BaseException,
    log_file: Optional[str] = None,
    to_addrs: Optional[List[str]] = None,
) -> None:
    log_file = log_file or os.path.join(LOG_DIR, LOG_FILE)
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    chunk = extract_last_run_block(log_file)

    subject = f"Chain order sync FAILED ({ENV}) - {type(error).__name__}"
    body = f"""
    <div style="font-family:Segoe UI,Arial,sans-serif;max-width:900px;margin:auto;">
      <h2 style="color:#c62828;">Chain order sync failed</h2>
      <p><b>Time:</b> {now}<br>
         <b>Host:</b> {html.escape(socket.gethostname())}<br>
         <b>Run:</b> {run_id}<br>
         <b>Error:</b> {html.escape(str(error))}</p>
      <p><b>Log file:</b> {html.escape(log_file)}</p>
      <h3>Last run block</h3>
      <pre style="font-size:12px;background:#f5f5f5;padding:8px;">{html.escape(chunk)}</pre>
    </div>
    """
    send_email(to_addrs if to_addrs is not None else ADMIN_EMAILS, subject, body)
