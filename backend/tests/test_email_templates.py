from datetime import date, datetime, timezone

from sitswap.domain.notifications import templates
from sitswap.settings import settings


def test_booking_paid_homeowner_copy():
    settings.public_base_url = "https://sitswap.test/"
    rendered = templates.render_booking_paid(
        role="homeowner",
        booking_id="b-1",
        listing_title="Lakeside cabin",
        counterpart_name="Sam",
        start_date=date(2026, 5, 1),
        end_date=date(2026, 5, 4),
        paid_at=datetime(2026, 4, 20, tzinfo=timezone.utc),
    )
    assert rendered.subject == "Payment received for Lakeside cabin"
    assert rendered.preview_text == "Sam paid the service and cleaning fees."
    assert "https://sitswap.test/sits/b-1" in rendered.html
    assert "May 01, 2026 - May 04, 2026" in rendered.html


def test_booking_paid_sitter_copy_falls_back_on_missing_names():
    rendered = templates.render_booking_paid(
        role="sitter",
        booking_id="b-2",
        listing_title=None,
        counterpart_name="  ",
        start_date=None,
        end_date=None,
        paid_at=None,
    )
    assert rendered.subject == "Payment complete for your listing"
    assert "address is now available" in rendered.preview_text


def test_user_values_are_escaped():
    rendered = templates.render_booking_completed(
        role="homeowner",
        booking_id="b-3",
        listing_title="<script>alert(1)</script>",
        counterpart_name="Sam & Co",
        start_date=date(2026, 5, 1),
        end_date=date(2026, 5, 2),
        completed_at=datetime(2026, 5, 3, tzinfo=timezone.utc),
    )
    assert "<script>" not in rendered.html
    assert "&lt;script&gt;" in rendered.html
    assert "Sam &amp; Co" in rendered.html
    assert "/reviews/b-3" in rendered.html
