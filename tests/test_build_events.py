import uuid

from app.services.build_events import BUILD_LOG, BUILD_QUEUED, BuildEventBus


class TestBuildEventBus:
    def test_subscribers_receive_messages(self):
        bus = BuildEventBus()
        received = []
        bus.subscribe(received.append)
        repo_id = uuid.uuid4()

        message = bus.publish(BUILD_QUEUED, repo_id=repo_id, build_id="b1", position=2)

        assert received == [message]
        assert message["event"] == "build_queued"
        assert message["repo_id"] == str(repo_id)
        assert message["deployment_id"] is None
        assert message["position"] == 2

    def test_unsubscribe(self):
        bus = BuildEventBus()
        received = []
        unsubscribe = bus.subscribe(received.append)
        unsubscribe()
        unsubscribe()
        bus.publish(BUILD_LOG, repo_id="r", build_id="b", line="x")
        assert received == []

    def test_failing_subscriber_does_not_block_others(self):
        bus = BuildEventBus()
        received = []

        def broken(_message):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        bus.publish(BUILD_QUEUED, repo_id="r")
        assert len(received) == 1

    def test_unreachable_redis_is_skipped(self):
        bus = BuildEventBus(redis_url="redis://127.0.0.1:1/0", channel_prefix="t")
        received = []
        bus.subscribe(received.append)

        bus.publish(BUILD_QUEUED, repo_id="r", build_id="b")
        bus.publish(BUILD_QUEUED, repo_id="r", build_id="c")

        assert [m["build_id"] for m in received] == ["b", "c"]
