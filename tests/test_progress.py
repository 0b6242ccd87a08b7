import json
import pathlib
import sys

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from quizgen.workflow.utils import progress


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def hset(self, key, mapping):
        self.ops.append(("hset", key, mapping))

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))

    def publish(self, channel, message):
        self.ops.append(("publish", channel, message))

    def execute(self):
        for op, key, value in self.ops:
            if op == "hset":
                self.redis.hashes.setdefault(key, {}).update(value)
            elif op == "expire":
                self.redis.ttl[key] = value
            else:
                self.redis.messages.append((key, json.loads(value)))


class FakeRedis:
    def __init__(self):
        self.hashes = {}
        self.ttl = {}
        self.messages = []

    def pipeline(self):
        return FakePipeline(self)

    def hgetall(self, key):
        return self.hashes.get(key, {})


def test_emit_progress_writes_hash_and_publishes():
    redis = FakeRedis()

    progress.emit_progress("job-1", "doc-1", "GENERATING", "generating", progress=50, extra={"mode": "fast"}, client=redis)

    stored = progress.read_progress("job-1", client=redis)
    assert stored["status"] == "GENERATING"
    assert stored["progress"] == "50"
    assert stored["mode"] == "fast"
    assert redis.ttl[progress.job_key("job-1")] == progress.PROGRESS_TTL_SECONDS
    channel, message = redis.messages[0]
    assert channel == progress.progress_channel("job-1")
    assert message["current_step"] == "generating"


def test_emit_progress_without_job_is_a_no_op():
    redis = FakeRedis()

    progress.emit_progress(None, "doc-1", "DONE", "done", client=redis)

    assert redis.hashes == {} and redis.messages == []


def test_none_values_are_not_stored():
    redis = FakeRedis()

    progress.emit_progress("job-2", None, "DONE", "done", progress=100, client=redis)

    assert "doc_id" not in progress.read_progress("job-2", client=redis)
    assert progress.read_progress("unknown", client=redis) == {}
