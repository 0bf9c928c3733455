import resend

from zyra_store import emails

# Bound at import, before the autouse outbox fixture swaps it out.
send_email_via_resend = emails.send_email_via_resend


class TestSendEmailViaResend:
    def test_missing_api_key(self, monkeypatch):
        monkeypatch.setattr(resend, "api_key", "  ")
        assert send_email_via_resend({"to": ["a@b.c"]}) == (
            False,
            "Resend API key is not configured.",
        )

    def test_successful_send(self, monkeypatch):
        sent = []
        monkeypatch.setattr(resend, "api_key", "re_live")
        monkeypatch.setattr(
            resend.Emails, "send", lambda payload: sent.append(payload) or {"id": "email_1"}
        )

        assert send_email_via_resend({"to": ["a@b.c"]}) == (True, None)
        assert sent == [{"to": ["a@b.c"]}]
        assert resend.api_key == "re_live"

    def test_provider_exception_is_reported(self, monkeypatch):
        def explode(payload):
            raise RuntimeError("rate limited")

        monkeypatch.setattr(resend, "api_key", "re_live")
        monkeypatch.setattr(resend.Emails, "send", explode)
        assert send_email_via_resend({}) == (False, "rate limited")


def test_app_sets_resend_key_once(app):
    assert resend.api_key == "re_test"


def test_order_confirmation_renders_items(app, outbox):
    order = {
        "order_number": "ZS-20260101-ABC123",
        "items": [{"name": "Rose Serum", "price": 19.99, "quantity": 2}],
        "total": 39.98,
        "currency": "usd",
    }
    with app.app_context():
        sent, _ = emails.send_order_confirmation_email(order, "casey@zyra.test")

    assert sent is True
    message = outbox[-1]
    assert message["to"] == ["casey@zyra.test"]
    assert message["from"] == "Zyra Store <no-reply@zyrastore.com>"
    assert "Rose Serum x2 (USD 19.99)" in message["text"]
    assert "ZS-20260101-ABC123" in message["html"]


def test_delivery_failure_is_logged_not_raised(app, monkeypatch, caplog):
    monkeypatch.setattr(emails, "send_email_via_resend", lambda payload: (False, "down"))
    with app.app_context():
        sent, error = emails.send_order_status_email(
            {"order_number": "ZS-1", "status": "SHIPPED"}, "casey@zyra.test"
        )
    assert (sent, error) == (False, "down")
    assert "was not delivered" in caplog.text
