"""
tests/test_notify.py -- Email notifier and detached dispatcher (notify/).

Coverage:
  - submit() returns before a slow send finishes
  - A failing send is logged by the done callback and never raised
  - A send still pending at the deadline is logged when the deadline passes
  - Dev mode (no SMTP host) logs a redacted recipient, never the link, and opens no socket
  - Configured mode passes the timeout to smtplib and sends over STARTTLS
  - Signup succeeds even when the email send blows up
"""

from __future__ import annotations

import logging
import smtplib
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from conftest import PASSWORD, make_service
from notify.dispatch import NotificationDispatcher
from notify.email import EmailNotifier, redact_email


class TestDispatcher:
    def test_submit_does_not_wait_for_the_send(self) -> None:
        dispatcher = NotificationDispatcher(timeout=8.0)
        release = threading.Event()
        future = dispatcher.submit("verification", release.wait, 5)
        assert not future.done()
        release.set()
        future.result(timeout=5)
        dispatcher.shutdown()

    def test_failure_is_logged_not_raised(self, caplog) -> None:
        dispatcher = NotificationDispatcher(timeout=8.0)

        def boom(*_args) -> None:
            raise smtplib.SMTPConnectError(421, "service not available")

        with caplog.at_level(logging.ERROR, logger="authcore.notify"):
            future = dispatcher.submit("verification", boom, "a@example.com", "tok")
            dispatcher.shutdown(wait=True)

        assert isinstance(future.exception(), smtplib.SMTPConnectError)
        assert "Notification 'verification' failed" in caplog.text
        assert "SMTPConnectError" in caplog.text

    def test_stalled_send_is_logged_at_the_deadline(self, caplog) -> None:
        dispatcher = NotificationDispatcher(timeout=0.2)
        release = threading.Event()
        with caplog.at_level(logging.ERROR, logger="authcore.notify"):
            future = dispatcher.submit("verification", release.wait, 10)
            for _ in range(50):
                if "timed out" in caplog.text:
                    break
                time.sleep(0.05)
            still_running = not future.done()
            release.set()
            dispatcher.shutdown(wait=True)

        assert still_running
        assert "Notification 'verification' timed out after 0.2s" in caplog.text

    def test_late_completion_is_logged(self, caplog) -> None:
        dispatcher = NotificationDispatcher(timeout=0.1)
        with caplog.at_level(logging.WARNING, logger="authcore.notify"):
            dispatcher.submit("password_reset", time.sleep, 0.4)
            dispatcher.shutdown(wait=True)
        assert "timed out" in caplog.text
        assert "finished after its deadline" in caplog.text

    def test_fast_send_disarms_the_deadline(self, caplog) -> None:
        dispatcher = NotificationDispatcher(timeout=0.2)
        with caplog.at_level(logging.WARNING, logger="authcore.notify"):
            dispatcher.submit("verification", lambda: None).result(timeout=5)
            time.sleep(0.4)
            dispatcher.shutdown(wait=True)
        assert "timed out" not in caplog.text


class TestEmailNotifier:
    def test_redact_email(self) -> None:
        assert redact_email("ada@example.com") == "ad***@example.com"
        assert redact_email("nope") == "redacted"

    def test_dev_mode_logs_instead_of_sending(self, caplog) -> None:
        notifier = EmailNotifier(frontend_url="http://app.test/")
        with patch("notify.email.smtplib.SMTP") as smtp, caplog.at_level(logging.INFO, logger="authcore.notify.email"):
            notifier.send_verification("ada@example.com", "tok123")
        smtp.assert_not_called()
        assert "ad***@example.com" in caplog.text
        assert "ada@example.com" not in caplog.text
        assert "tok123" not in caplog.text
        assert "verify-email" not in caplog.text

    def test_links_point_at_frontend(self) -> None:
        notifier = EmailNotifier(frontend_url="http://app.test/")
        assert notifier.verification_url("abc") == "http://app.test/verify-email?token=abc"
        assert notifier.reset_url("abc") == "http://app.test/reset-password?token=abc"

    def test_smtp_send_uses_timeout_and_starttls(self) -> None:
        notifier = EmailNotifier(
            smtp_host="smtp.test",
            smtp_port=2525,
            smtp_user="mailer",
            smtp_password="secret",
            from_email="noreply@app.test",
            timeout=3.0,
        )
        with patch("notify.email.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            notifier.send_password_reset("ada@example.com", "tok")

        smtp.assert_called_once_with("smtp.test", 2525, timeout=3.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        sender, recipient, message = server.sendmail.call_args.args
        assert (sender, recipient) == ("noreply@app.test", "ada@example.com")
        assert "reset-password?token=tok" in message

    def test_smtp_errors_propagate_to_the_dispatcher(self) -> None:
        notifier = EmailNotifier(smtp_host="smtp.test", from_email="noreply@app.test")
        with patch("notify.email.smtplib.SMTP", side_effect=TimeoutError("timed out")):
            with pytest.raises(TimeoutError):
                notifier.send_verification("ada@example.com", "tok")


class TestSignupNotificationIsolation:
    def test_signup_survives_a_failing_notifier(self, store, caplog) -> None:
        notifier = MagicMock()
        notifier.send_verification.side_effect = smtplib.SMTPServerDisconnected("gone")
        dispatcher = NotificationDispatcher(timeout=8.0)
        service = make_service(store, notifier=notifier, dispatcher=dispatcher)

        with caplog.at_level(logging.ERROR, logger="authcore.notify"):
            account = service.signup("Ada Lovelace", "ada@example.com", PASSWORD)
            dispatcher.shutdown(wait=True)

        assert account.id is not None
        assert account.is_email_verified is False
        notifier.send_verification.assert_called_once()
        assert "SMTPServerDisconnected" in caplog.text
