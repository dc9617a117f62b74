"""Notification queue delivery and retries."""

import pytest

from windbill.services.notifications import NotificationQueue


@pytest.mark.asyncio
class TestNotificationQueue:
    async def test_retries_until_delivered(self) -> None:
        attempts = []

        async def flaky_sender(notification) -> None:
            attempts.append(notification.attempts)
            if notification.attempts < 3:
                raise ConnectionError("mail relay down")

        queue = NotificationQueue(sender=flaky_sender, max_attempts=3, retry_delay=0)
        queue.enqueue("invoice.email_requested", {"invoiceId": "inv-1"})
        await queue.drain()

        assert attempts == [1, 2, 3]
        assert queue.delivered == 1
        assert queue.failed == []

    async def test_gives_up_after_max_attempts(self) -> None:
        async def broken_sender(notification) -> None:
            raise ConnectionError("mail relay down")

        queue = NotificationQueue(sender=broken_sender, max_attempts=2, retry_delay=0)
        queue.enqueue("billing_rule.executed", {"ruleId": "rule-1"})
        await queue.drain()

        assert queue.delivered == 0
        assert len(queue.failed) == 1
        assert queue.failed[0].attempts == 2
        assert queue.failed[0].last_error == "mail relay down"

    async def test_full_queue_drops_event(self) -> None:
        queue = NotificationQueue(maxsize=1)

        assert queue.enqueue("a", {}) is True
        assert queue.enqueue("b", {}) is False
        assert [n.event for n in queue.failed] == ["b"]

    async def test_worker_delivers_in_background(self) -> None:
        delivered = []

        async def sender(notification) -> None:
            delivered.append(notification.event)

        queue = NotificationQueue(sender=sender)
        queue.start()
        assert queue.running
        queue.enqueue("billing_rule.executed", {})
        queue.enqueue("invoice.email_requested", {})
        await queue.stop()

        assert delivered == ["billing_rule.executed", "invoice.email_requested"]
        assert not queue.running
