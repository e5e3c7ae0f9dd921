import io

import pytest

import waybackurls


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def text(self, errors="strict"):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """
    Stand-in for ``aiohttp.ClientSession``.

    ``routes`` maps a URL substring to a list of outcomes, each either a
    ``(status, body)`` pair or an exception instance. Outcomes are consumed in
    order; the last one repeats.
    """

    def __init__(self, routes):
        self.routes = {key: list(outcomes) for key, outcomes in routes.items()}
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append(url)
        for key, outcomes in self.routes.items():
            if key in url:
                outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
                if isinstance(outcome, BaseException):
                    raise outcome
                return FakeResponse(*outcome)
        raise AssertionError(f"unexpected request: {url}")


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def cfg():
    return waybackurls.Config(max_retries=3, backoff_base=0, quiet=True)


@pytest.fixture
def sink():
    return io.StringIO()


@pytest.fixture
def diagnostics(monkeypatch):
    lines = []
    monkeypatch.setattr(waybackurls, "log", lines.append)
    return lines


@pytest.fixture
def patch_session(monkeypatch):
    """Make ``waybackurls.run`` open the given fake instead of a real session."""

    def install(session):
        class _Ctx:
            async def __aenter__(self):
                return session

            async def __aexit__(self, *exc):
                return False

        monkeypatch.setattr(waybackurls.aiohttp, "ClientSession", lambda *a, **kw: _Ctx())
        return session

    return install
