from types import SimpleNamespace

import resend

from accessedu.services.mail_service import MailNotifier

SUB = SimpleNamespace(subscription_code="SUB_1", email="a@b.com", plan_name="Monthly Plan", plan_code="monthly")


def test_skipped_without_api_key(monkeypatch):
    sent = []
    monkeypatch.setattr(resend.Emails, "send", lambda params: sent.append(params))

    assert MailNotifier("", "noreply@accessedu.ng", "Access Edu NG", "https://accessedu.ng").payment_failed(SUB) is False
    assert sent == []


def test_payment_failed_email(monkeypatch):
    sent = []
    monkeypatch.setattr(resend.Emails, "send", lambda params: sent.append(params))

    notifier = MailNotifier("re_test", "noreply@accessedu.ng", "Access Edu NG", "https://accessedu.ng")

    assert notifier.payment_failed(SUB) is True
    assert sent[0]["to"] == ["a@b.com"]
    assert sent[0]["subject"] == "[Access Edu NG] Payment failed"
    assert "Monthly Plan" in sent[0]["html"]


def test_send_failure_is_logged_not_raised(monkeypatch):
    def boom(params):
        raise RuntimeError("resend down")

    monkeypatch.setattr(resend.Emails, "send", boom)
    notifier = MailNotifier("re_test", "noreply@accessedu.ng", "Access Edu NG", "https://accessedu.ng")

    assert notifier.subscription_cancelled(SUB) is False
