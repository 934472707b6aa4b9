import pytest
import requests

from kubenode.engine.fetcher import Fetcher, validate_archive


class FakeResponse:
    def __init__(self, chunks=(b"payload",), status=200, break_after=None):
        self.chunks = list(chunks)
        self.status = status
        self.break_after = break_after

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def iter_content(self, chunk_size=1):
        for index, chunk in enumerate(self.chunks):
            if self.break_after is not None and index >= self.break_after:
                raise requests.ConnectionError("connection reset")
            yield chunk


class FakeSession:
    """Hands out queued responses; exceptions in the queue are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.urls = []

    def get(self, url, stream=False, timeout=None):
        self.urls.append(url)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def sleeps():
    return []


def make_fetcher(session, sleeps, **kwargs):
    return Fetcher(session=session, sleep=sleeps.append, **kwargs)


def test_successful_download(tmp_path, sleeps):
    session = FakeSession(FakeResponse([b"abc", b"def"]))
    dest = tmp_path / "out" / "file.bin"

    assert make_fetcher(session, sleeps).fetch("https://example.com/file.bin", dest)
    assert dest.read_bytes() == b"abcdef"
    assert sleeps == []
    assert not (tmp_path / "out" / "file.bin.part").exists()


def test_gives_up_after_max_attempts_with_linear_backoff(tmp_path, sleeps):
    session = FakeSession(*[requests.ConnectionError("down")] * 3)
    dest = tmp_path / "file.bin"

    assert not make_fetcher(session, sleeps).fetch("https://example.com/file.bin", dest)
    assert len(session.urls) == 3
    assert sleeps == [2.0, 4.0]
    assert not dest.exists()


def test_recovers_on_a_later_attempt(tmp_path, sleeps):
    session = FakeSession(FakeResponse(status=503), requests.Timeout("slow"), FakeResponse([b"ok"]))
    dest = tmp_path / "file.bin"

    assert make_fetcher(session, sleeps).fetch("https://example.com/file.bin", dest)
    assert dest.read_bytes() == b"ok"
    assert sleeps == [2.0, 4.0]


def test_per_call_limits_override_defaults(tmp_path, sleeps):
    session = FakeSession(*[requests.ConnectionError("down")] * 5)
    fetched = make_fetcher(session, sleeps).fetch(
        "https://example.com/file.bin", tmp_path / "f", max_attempts=5, base_backoff=0.5)

    assert not fetched
    assert len(session.urls) == 5
    assert sleeps == [0.5, 1.0, 1.5, 2.0]


def test_interrupted_download_leaves_nothing_behind(tmp_path, sleeps):
    session = FakeSession(FakeResponse([b"a", b"b"], break_after=1))
    dest = tmp_path / "file.bin"

    assert not make_fetcher(session, sleeps, max_attempts=1).fetch("https://example.com/file.bin", dest)
    assert list(tmp_path.iterdir()) == []


def test_validate_archive(tmp_path, tarball):
    good = tarball("good.tar.gz", ["bin/tool"])
    bad = tmp_path / "bad.tar.gz"
    bad.write_bytes(b"<html>Not Found</html>")
    truncated = tmp_path / "truncated.tar.gz"
    truncated.write_bytes(good.read_bytes()[:40])

    assert validate_archive(good)
    assert not validate_archive(bad)
    assert not validate_archive(truncated)
    assert not validate_archive(tmp_path / "missing.tar.gz")


def test_fetch_archive_removes_invalid_download(tmp_path, sleeps):
    session = FakeSession(FakeResponse([b"<html>Not Found</html>"]))
    dest = tmp_path / "tool.tar.gz"

    assert make_fetcher(session, sleeps).fetch_archive("https://example.com/tool.tar.gz", dest) is None
    assert not dest.exists()


def test_fetch_archive_prefers_valid_cached_copy(tmp_path, tarball, sleeps):
    cache = tmp_path / "cache"
    cached = tarball("cache/tool-1.0.tar.gz", ["tool"])
    session = FakeSession()

    result = make_fetcher(session, sleeps).fetch_archive(
        "https://example.com/v1.0/tool-1.0.tar.gz", tmp_path / "dl.tar.gz", cache_dir=cache)
    assert result == cached
    assert session.urls == []


def test_fetch_archive_ignores_corrupt_cache(tmp_path, tarball, sleeps):
    cache = tmp_path / "cache"
    cache.mkdir()
    (cache / "tool-1.0.tar.gz").write_bytes(b"junk")
    payload = tarball("source.tar.gz", ["tool"]).read_bytes()
    session = FakeSession(FakeResponse([payload]))
    dest = tmp_path / "dl.tar.gz"

    result = make_fetcher(session, sleeps).fetch_archive(
        "https://example.com/tool-1.0.tar.gz", dest, cache_dir=cache)
    assert result == dest
    assert validate_archive(dest)


def test_zero_attempts_is_rejected_not_defaulted(tmp_path, sleeps):
    session = FakeSession(FakeResponse([b"ok"]))
    with pytest.raises(ValueError, match="at least 1"):
        make_fetcher(session, sleeps).fetch("https://example.com/file.bin", tmp_path / "f", max_attempts=0)
    assert session.urls == []


def test_single_attempt_override_does_not_retry(tmp_path, sleeps):
    session = FakeSession(*[requests.ConnectionError("down")] * 3)
    assert not make_fetcher(session, sleeps, max_attempts=3).fetch(
        "https://example.com/file.bin", tmp_path / "f", max_attempts=1)
    assert len(session.urls) == 1
    assert sleeps == []
