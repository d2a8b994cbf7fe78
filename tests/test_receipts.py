import re

import pytest

from lifegate.model.donation import DonationRecord
from lifegate.receipts import (
    Branding, format_amount, issue_token, receipt_url, render, render_html,
    render_pdf,
)


def _record(**kw):
    base = dict(
        reference="cs_test_1", provider="stripe", amount_minor=500000,
        currency="NGN", donor_name="Jane Doe", donor_email="jane@example.com",
        status="success", receipt_token="ab" * 24, created_at=1_700_000_000.0,
    )
    base.update(kw)
    return DonationRecord(**base)


def test_issue_token_is_48_hex_and_unique():
    tokens = {issue_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all(re.fullmatch(r"[0-9a-f]{48}", t) for t in tokens)


@pytest.mark.parametrize("minor,currency,expected", [
    (500000, "NGN", "NGN 5,000.00"),
    (1, "usd", "USD 0.01"),
    (0, "NGN", "NGN 0.00"),
    (123456789, "NGN", "NGN 1,234,567.89"),
])
def test_format_amount(minor, currency, expected):
    assert format_amount(minor, currency) == expected


def test_receipt_url_quotes_parameters():
    url = receipt_url("https://give.example.org/", "ref with&stuff", "abc")
    assert url == ("https://give.example.org/api/receipt"
                   "?ref=ref%20with%26stuff&t=abc")


def test_html_escapes_donor_input():
    html = render_html(_record(donor_name="<script>alert(1)</script>"))
    assert "<script>" not in html
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
    assert "NGN 5,000.00" in html
    assert "cs_test_1" in html


def test_html_download_link_only_when_given():
    assert "Download PDF receipt" not in render_html(_record())
    html = render_html(_record(), Branding(),
                       "https://give.example.org/api/receipt?ref=a&t=b")
    assert "Download PDF receipt" in html
    assert "ref=a&amp;t=b" in html


def test_pdf_carries_receipt_fields():
    pdf = render_pdf(_record(), Branding("Life Gate Ministries Worldwide",
                                         "Building Fund"))
    assert pdf.startswith(b"%PDF")
    assert b"Jane Doe" in pdf
    assert b"NGN 5,000.00" in pdf
    assert b"cs_test_1" in pdf
    assert b"Building Fund" in pdf


def test_pdf_survives_non_latin_names():
    pdf = render_pdf(_record(donor_name="Chidi 中文"))
    assert pdf.startswith(b"%PDF")
    assert b"Chidi" in pdf


def test_render_dispatches_on_format():
    assert render(_record(), "html").startswith(b"<div")
    assert render(_record(), "pdf").startswith(b"%PDF")
    with pytest.raises(ValueError):
        render(_record(), "docx")
