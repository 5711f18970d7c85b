"""NotificationChannel のテスト."""

import logging

import pytest

from planflow.core.notifications import Notification, NotificationChannel, NotificationTopic


class TestSubscribe:
    """購読と配信のテスト."""

    def test_publish_to_topic_listeners(self) -> None:
        """購読中のトピックにのみ配信される."""
        channel = NotificationChannel()
        received: list[Notification] = []
        channel.subscribe(NotificationTopic.PLAN_CREATED, received.append)

        channel.publish(NotificationTopic.PLAN_CREATED, {"plan_id": "p1"}, source="planner")
        channel.publish(NotificationTopic.TASK_ASSIGNED, {"task_id": "t1"})

        assert len(received) == 1
        assert received[0].payload == {"plan_id": "p1"}
        assert received[0].source == "planner"

    def test_topic_by_string(self) -> None:
        """トピックは文字列値でも指定できる."""
        channel = NotificationChannel()
        received: list[Notification] = []
        channel.subscribe("blocker:detected", received.append)

        channel.publish(NotificationTopic.BLOCKER_DETECTED)

        assert received[0].topic == NotificationTopic.BLOCKER_DETECTED

    def test_unknown_topic_rejected(self) -> None:
        """未知のトピックは ValueError."""
        channel = NotificationChannel()

        with pytest.raises(ValueError):
            channel.subscribe("plan:exploded", print)

    def test_wildcard_listener(self) -> None:
        """None で購読すると全トピックを受け取る."""
        channel = NotificationChannel()
        topics: list[NotificationTopic] = []
        channel.subscribe(None, lambda n: topics.append(n.topic))

        channel.publish(NotificationTopic.EXECUTION_STARTED)
        channel.publish(NotificationTopic.EXECUTION_COMPLETED)

        assert topics == [NotificationTopic.EXECUTION_STARTED, NotificationTopic.EXECUTION_COMPLETED]
        assert channel.listener_count() == 1

    def test_unsubscribe(self) -> None:
        """購読解除後は配信されない."""
        channel = NotificationChannel()
        received: list[Notification] = []
        channel.subscribe(NotificationTopic.TASK_FAILED, received.append)

        assert channel.unsubscribe(NotificationTopic.TASK_FAILED, received.append) is True
        assert channel.unsubscribe(NotificationTopic.TASK_FAILED, received.append) is False

        channel.publish(NotificationTopic.TASK_FAILED)
        assert received == []
        assert channel.listener_count(NotificationTopic.TASK_FAILED) == 0


class TestDelivery:
    """配信時の挙動のテスト."""

    def test_listener_error_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        """Listener の例外は他の Listener に影響しない."""
        channel = NotificationChannel()
        received: list[Notification] = []

        def broken(notification: Notification) -> None:
            raise RuntimeError("listener bug")

        channel.subscribe(NotificationTopic.PROGRESS_UPDATED, broken)
        channel.subscribe(NotificationTopic.PROGRESS_UPDATED, received.append)

        with caplog.at_level(logging.WARNING):
            channel.publish(NotificationTopic.PROGRESS_UPDATED, {"percentage": 10.0})

        assert len(received) == 1
        assert "listener bug" in caplog.text

    def test_listeners_called_in_subscription_order(self) -> None:
        """Listener は購読順に呼ばれる."""
        channel = NotificationChannel()
        order: list[str] = []
        channel.subscribe(NotificationTopic.TASK_COMPLETED, lambda n: order.append("first"))
        channel.subscribe(NotificationTopic.TASK_COMPLETED, lambda n: order.append("second"))
        channel.subscribe(None, lambda n: order.append("wildcard"))

        channel.publish(NotificationTopic.TASK_COMPLETED)

        assert order == ["first", "second", "wildcard"]

    def test_history_bounded(self) -> None:
        """履歴は上限件数まで保持する."""
        channel = NotificationChannel(history_size=2)

        channel.publish(NotificationTopic.TASK_ASSIGNED, {"n": 1})
        channel.publish(NotificationTopic.TASK_ASSIGNED, {"n": 2})
        channel.publish(NotificationTopic.TASK_COMPLETED, {"n": 3})

        assert [n.payload["n"] for n in channel.history()] == [2, 3]
        assert [n.payload["n"] for n in channel.history("task:assigned")] == [2]
