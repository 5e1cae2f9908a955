# notify.py
# Stock report email.

import logging
import smtplib
from datetime import date
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import logic

logger = logging.getLogger(__name__)


def render_report(rows, today: date = None) -> str:
    today = today or date.today()
    if not rows:
        return f"Stock report {today.isoformat()}\n\nNo materials in the catalog."
    table = logic.summary_frame(rows).to_string(index=False)
    return f"Stock report {today.isoformat()}\n\n{table}\n"


def send_stock_report(rows, settings, recipients=None, today: date = None) -> bool:
    """
    Email the stock summary with a CSV attachment.
    Returns False (and logs the report) when SMTP is not configured or sending fails.
    """
    recipients = list(recipients or settings.report_recipients)
    body = render_report(rows, today)
    smtp = settings.smtp

    if not recipients:
        logger.warning("No report recipients configured")
        return False
    if not smtp.configured:
        logger.info("SMTP not configured, stock report for %s:\n%s", ", ".join(recipients), body)
        return False

    sender = smtp.sender or smtp.username
    msg = MIMEMultipart()
    msg["From"] = sender
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = f"Stock report {(today or date.today()).isoformat()}"
    msg.attach(MIMEText(body, "plain"))

    csv = logic.summary_frame(rows).to_csv(index=False).encode("utf-8")
    attachment = MIMEApplication(csv, Name="stock_summary.csv")
    attachment["Content-Disposition"] = 'attachment; filename="stock_summary.csv"'
    msg.attach(attachment)

    try:
        server = smtplib.SMTP(smtp.server, smtp.port)
        server.starttls()
        server.login(smtp.username, smtp.password)
        server.sendmail(sender, recipients, msg.as_string())
        server.quit()
    except (smtplib.SMTPException, OSError):
        logger.exception("Failed to send stock report")
        return False

    logger.info("Stock report sent to %s", ", ".join(recipients))
    return True
