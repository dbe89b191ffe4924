# scripts/daily_reconcile_email.py
import os, sys
from datetime import datetime

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from app import build_service
from emailer import send_email
from config import ADMIN_EMAILS, ENV
from logger import get_logger
log = get_logger("daily_reconcile")


def build_html(report: dict) -> str:
    generated = datetime.now().strftime("%b %d, %Y %I:%M %p")
    details = report.get("details", {})
    disc = report["discrepancies"]

    def id_block(title, ids):
        if not ids:
            return f"""
            <h3 style="margin-top:20px;">{title}</h3>
            <p style="color:#4caf50;"><b>None.</b></p>
            """
        items = "".join(f"<li>{oid}</li>" for oid in ids)
        return f"""
        <h3 style="margin-top:20px;">{title} ({len(ids)})</h3>
        <ul style="font-size:14px;">{items}</ul>
        """

    mismatch_rows = ""
    for m in details.get("status_mismatch", []):
        mismatch_rows += f"""
        <tr>
          <td style="padding:8px;border:1px solid #ddd;">{m['order_id']}</td>
          <td style="padding:8px;border:1px solid #ddd;">{m['chain_status']}</td>
          <td style="padding:8px;border:1px solid #ddd;">{m['local_status'] if m['local_status'] is not None else "-"}</td>
        </tr>
        """
    mismatch_table = ""
    if mismatch_rows:
        mismatch_table = f"""
        <h3 style="margin-top:20px;">Status mismatch ({disc['status_mismatch']})</h3>
        <table style="border-collapse:collapse;width:100%;font-size:14px;margin-top:8px;">
          <thead>
            <tr style="background:#f5f5f5;">
              <th style="padding:8px;border:1px solid #ddd;">Order</th>
              <th style="padding:8px;border:1px solid #ddd;">Ledger status</th>
              <th style="padding:8px;border:1px solid #ddd;">Local status</th>
            </tr>
          </thead>
          <tbody>
            {mismatch_rows}
          </tbody>
        </table>
        """

    issues = "".join(f"<li>{i}</li>" for i in report["health"]["issues"])
    return f"""
    <div style="font-family:Segoe UI,Arial,sans-serif;max-width:900px;margin:auto;">
      <h2 style="color:#0b57d0;">Chain Order Reconciliation ({ENV})</h2>
      <p><b>Generated:</b> {generated}</p>
      <p><b>Ledger orders:</b> {report['chain_orders']['total']} &nbsp;
         <b>Local chain orders:</b> {report['local_orders']['total']}</p>
      <ul>{issues}</ul>

      {id_block("Ledger orders missing locally", details.get("missing_in_local", []))}
      {id_block("Local chain orders missing on ledger", details.get("missing_in_chain", []))}
      {mismatch_table}

      <hr style="margin-top:25px;">
      <p style="font-size:13px;color:#666;">
        This email is generated daily by the chain order sync monitor. Lists are capped at 50 entries.
      </p>
    </div>
    """


def main():
    service = build_service()
    report = service.reconcile_report(force_refresh=True, detailed=True)

    # Only send email if something needs attention
    if report["health"]["status"] == "healthy":
        log.info("Reconciliation healthy. Daily email not sent.")
        return

    disc = report["discrepancies"]
    subject = (
        f"Chain Order Reconciliation ({ENV}) - missing={disc['missing_in_local']}, "
        f"mismatch={disc['status_mismatch']}"
    )
    send_email(ADMIN_EMAILS, subject, build_html(report))
    log.info(f"Sent reconciliation email to {ADMIN_EMAILS}")


if __name__ == "__main__":
    main()
