"""
Receipt tokens and rendering.

A receipt token is a bearer secret bound to one donation reference. It is
issued once, inside the ledger transaction that creates the donation, and is
never regenerated, so links already emailed stay valid.

Rendering is pure: DonationRecord -> bytes. Two formats:
  - "html": the styled email body (Jinja2, autoescaped)
  - "pdf":  the printable receipt served by GET /api/receipt
"""
from __future__ import annotations
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from urllib.parse import quote

from fpdf import FPDF
from fpdf.enums import XPos, YPos
from jinja2 import Environment, PackageLoader, select_autoescape

from .model.donation import DonationRecord

TOKEN_BYTES = 24  # 48 hex chars

_env = Environment(
    loader=PackageLoader("lifegate", "templates"),
    autoescape=select_autoescape(["html"]),
)


def issue_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def format_amount(amount_minor: int, currency: str) -> str:
    major = Decimal(int(amount_minor)) / 100
    return f"{(currency or '').upper()} {major:,.2f}"


def receipt_url(base_url: str, reference: str, token: str) -> str:
    return (
        f"{base_url.rstrip('/')}/api/receipt"
        f"?ref={quote(reference, safe='')}&t={quote(token, safe='')}"
    )


@dataclass(frozen=True)
class Branding:
    ministry_name: str = "Life Gate Ministries Worldwide"
    campaign_title: str = "Life Gate Ministries Campaign"


def _date_text(ts: Optional[float]) -> str:
    if not ts:
        return ""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(
        "%d %b %Y, %H:%M UTC"
    )


def render_html(record: DonationRecord, branding: Branding = Branding(),
                download_url: Optional[str] = None) -> str:
    tpl = _env.get_template("receipt_email.html")
    return tpl.render(
        ministry_name=branding.ministry_name,
        campaign_title=branding.campaign_title,
        name=record.donor_name,
        amount_text=format_amount(record.amount_minor, record.currency),
        provider=record.provider,
        date_text=_date_text(record.created_at),
        reference=record.reference,
        download_url=download_url,
        year=datetime.now(tz=timezone.utc).year,
    )


def _latin1(s: str) -> str:
    # core PDF fonts only cover latin-1
    return s.encode("latin-1", "replace").decode("latin-1")


def render_pdf(record: DonationRecord,
               branding: Branding = Branding()) -> bytes:
    pdf = FPDF(format="A4")
    pdf.set_compression(False)
    pdf.set_margins(20, 20, 20)
    pdf.add_page()

    # header
    pdf.set_font("Helvetica", "B", 20)
    pdf.cell(0, 10, _latin1(branding.ministry_name),
             new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.set_font("Helvetica", "", 12)
    pdf.set_text_color(68, 68, 68)
    pdf.cell(0, 8, "Donation Receipt", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.ln(6)
    pdf.set_text_color(0, 0, 0)

    # body
    rows = [
        ("Campaign", branding.campaign_title),
        ("Donor Name", record.donor_name),
    ]
    if record.donor_email:
        rows.append(("Email", record.donor_email))
    rows += [
        ("Amount", format_amount(record.amount_minor, record.currency)),
        ("Provider", record.provider.upper()),
        ("Date", _date_text(record.created_at) or "-"),
        ("Reference", record.reference),
    ]
    for label, value in rows:
        pdf.set_font("Helvetica", "", 11)
        pdf.cell(45, 9, label, border="B")
        pdf.set_font("Helvetica", "B", 11)
        pdf.cell(0, 9, _latin1(str(value)), border="B",
                 new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.ln(12)

    # footer
    pdf.set_font("Helvetica", "", 11)
    pdf.set_text_color(68, 68, 68)
    for line in ("Thank you for your donation.", "God bless you,",
                 branding.ministry_name):
        pdf.cell(0, 7, _latin1(line), new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    return bytes(pdf.output())


def render(record: DonationRecord, fmt: str = "pdf",
           branding: Branding = Branding(),
           download_url: Optional[str] = None) -> bytes:
    if fmt == "html":
        return render_html(record, branding, download_url).encode("utf-8")
    if fmt == "pdf":
        return render_pdf(record, branding)
    raise ValueError(f"unknown receipt format: {fmt!r}")
