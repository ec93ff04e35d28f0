from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import date, datetime
from typing import Literal

from sitswap.settings import settings

Role = Literal["homeowner", "sitter"]

TEMPLATE_BOOKING_PAID = "booking_paid"
TEMPLATE_BOOKING_COMPLETED = "booking_completed"


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    preview_text: str
    html: str


def _text(value: object, fallback: str = "") -> str:
    if value is None:
        return fallback
    text = str(value).strip()
    return text or fallback


def _format_date(value: date | datetime | None) -> str:
    if value is None:
        return ""
    return value.strftime("%b %d, %Y")


def _date_range(start: date | None, end: date | None) -> str:
    if start and end:
        return f"{_format_date(start)} - {_format_date(end)}"
    return _format_date(start or end)


def _url(path: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}{path}"


def _layout(
    *,
    title: str,
    preview_text: str,
    summary_rows: list[tuple[str, str]],
    cta_label: str,
    cta_url: str,
) -> str:
    rows = "".join(
        "<tr>"
        f'<td style="padding:4px 12px 4px 0;color:#6b7280;">{html.escape(label)}</td>'
        f'<td style="padding:4px 0;color:#111827;">{html.escape(value)}</td>'
        "</tr>"
        for label, value in summary_rows
        if value
    )
    return (
        "<!doctype html><html><head>"
        f"<title>{html.escape(title)}</title></head>"
        '<body style="background:#f6f5f4;font-family:sans-serif;">'
        f'<div style="display:none;max-height:0;overflow:hidden;">{html.escape(preview_text)}</div>'
        f'<h1 style="font-size:20px;color:#111827;">{html.escape(title)}</h1>'
        f'<p style="color:#111827;">{html.escape(preview_text)}</p>'
        f'<table role="presentation">{rows}</table>'
        f'<p><a href="{html.escape(cta_url, quote=True)}">{html.escape(cta_label)}</a></p>'
        f'<p style="color:#9ca3af;font-size:12px;">Or copy this link: {html.escape(cta_url)}</p>'
        "</body></html>"
    )


def render_booking_paid(
    *,
    role: Role,
    booking_id: str,
    listing_title: str | None,
    counterpart_name: str | None,
    start_date: date | None,
    end_date: date | None,
    paid_at: datetime | None,
) -> RenderedEmail:
    title_text = _text(listing_title, "your listing")
    counterpart = _text(counterpart_name, "your SitSwap match")
    if role == "homeowner":
        title = "Payment received"
        subject = f"Payment received for {title_text}"
        preview = f"{counterpart} paid the service and cleaning fees."
    else:
        title = "Payment complete"
        subject = f"Payment complete for {title_text}"
        preview = "Your payment is complete and the address is now available."
    return RenderedEmail(
        subject=subject,
        preview_text=preview,
        html=_layout(
            title=title,
            preview_text=preview,
            summary_rows=[
                ("Listing", title_text),
                ("Dates", _date_range(start_date, end_date)),
                ("Counterpart", counterpart),
                ("Paid at", _format_date(paid_at)),
            ],
            cta_label="View sit",
            cta_url=_url(f"/sits/{booking_id}"),
        ),
    )


def render_booking_completed(
    *,
    role: Role,
    booking_id: str,
    listing_title: str | None,
    counterpart_name: str | None,
    start_date: date | None,
    end_date: date | None,
    completed_at: datetime | None,
) -> RenderedEmail:
    title_text = _text(listing_title, "your listing")
    if role == "homeowner":
        preview = f"Your sit for {title_text} is complete. Points are now available."
    else:
        preview = f"Your stay at {title_text} is complete. Thanks for sitting!"
    return RenderedEmail(
        subject=f"Sit completed for {title_text}",
        preview_text=preview,
        html=_layout(
            title="Sit completed",
            preview_text=preview,
            summary_rows=[
                ("Listing", title_text),
                ("Dates", _date_range(start_date, end_date)),
                ("Counterpart", _text(counterpart_name)),
                ("Completed at", _format_date(completed_at)),
            ],
            cta_label="Leave a review",
            cta_url=_url(f"/reviews/{booking_id}"),
        ),
    )
