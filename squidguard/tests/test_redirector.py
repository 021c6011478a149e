import io
import logging

import pytest

from squidguard.services.category_store import CategoryStore, build_tables
from squidguard.services.errors import RedirectConfigError, UnknownCategoryError
from squidguard.services.matcher import Matcher
from squidguard.services.policy import CategoryPolicy
from squidguard.services.redirect import CHECKF
from squidguard.services.redirector import Redirector


class _CountingStream(io.StringIO):
    def __init__(self):
        super().__init__()
        self.flushes = 0

    def flush(self):
        self.flushes += 1
        super().flush()


@pytest.fixture()
def matcher(tmp_path):
    (tmp_path / "porn").mkdir()
    (tmp_path / "porn" / "domains").write_text("youporn.com\n", encoding="utf-8")
    (tmp_path / "nothing").mkdir()
    cats = {"porn": "porn", "nothing": "nothing"}
    build_tables(str(tmp_path), cats)
    with CategoryStore.open(str(tmp_path), cats) as store:
        yield Matcher(store)


def test_end_to_end_redirect(matcher):
    r = Redirector(matcher, CategoryPolicy(block=("porn",)), "http://proxy/deny?url=%u")
    stdin = io.StringIO("http://www.youporn.com/ 172.31.30.132/- user1 GET -\n")
    stdout = _CountingStream()

    assert r.run(stdin, stdout) == 1
    assert stdout.getvalue() == "http://proxy/deny?url=http://www.youporn.com/\n"


def test_category_without_tiers_passes_everything(matcher):
    r = Redirector(matcher, CategoryPolicy(block=("nothing",)), "http://proxy/deny?url=%u")
    stdin = io.StringIO("http://www.youporn.com/ 172.31.30.132/- user1 GET -\n")
    stdout = io.StringIO()

    r.run(stdin, stdout)
    assert stdout.getvalue() == "\n"


def test_one_flushed_line_per_request(matcher):
    r = Redirector(matcher, CategoryPolicy(block=("porn",)), "http://proxy/deny")
    stdin = io.StringIO(
        "http://example.com/ 10.0.0.1/- - GET\n"
        "http://youporn.com/x 10.0.0.1/- - GET\n"
        "\n"
        "www.youporn.com:443 10.0.0.1/- - CONNECT\n"
    )
    stdout = _CountingStream()

    assert r.run(stdin, stdout) == 4
    assert stdout.getvalue().split("\n") == ["", "http://proxy/deny", "", "302:http://proxy/deny", ""]
    assert stdout.flushes == 4


def test_last_line_without_newline(matcher):
    r = Redirector(matcher, CategoryPolicy(block=("porn",)), "http://proxy/deny")
    stdout = io.StringIO()
    r.run(io.StringIO("http://youporn.com/ 10.0.0.1/- - GET"), stdout)
    assert stdout.getvalue() == "http://proxy/deny\n"


def test_oneshot_stops_after_first_request(matcher):
    r = Redirector(matcher, CategoryPolicy(block=("porn",)), "http://proxy/deny", oneshot=True)
    stdin = io.StringIO("http://youporn.com/ 10.0.0.1/- - GET\nhttp://youporn.com/ 10.0.0.1/- - GET\n")
    stdout = io.StringIO()

    assert r.run(stdin, stdout) == 1
    assert stdout.getvalue() == "http://proxy/deny\n"
    assert stdin.readline() != ""


def test_malformed_line_is_answered_empty(matcher, caplog):
    caplog.set_level(logging.WARNING, logger="squidguard")
    r = Redirector(matcher, CategoryPolicy(block=("porn",)), "http://proxy/deny")
    assert r.handle("   ") == ""
    assert "Ignoring request" in caplog.text


def test_run_requires_redirect(matcher):
    r = Redirector(matcher, CategoryPolicy(block=("porn",)), "")
    with pytest.raises(RedirectConfigError):
        r.run(io.StringIO("http://youporn.com/ 10.0.0.1/- - GET\n"), io.StringIO())


def test_no_classifier_never_redirects(matcher):
    r = Redirector(matcher, None, "http://proxy/deny")
    assert r.handle("http://youporn.com/ 10.0.0.1/- - GET") == ""


def test_classifier_receives_matcher_and_request(matcher):
    seen = []

    def classifier(engine, req):
        seen.append((engine, req.ident, req.host))
        if engine.matches(req, "porn") and req.ident != "boss":
            return "http://proxy/denied-for-" + req.ident
        return None

    r = Redirector(matcher, classifier, CHECKF)
    assert r.handle("http://youporn.com/ 10.0.0.1/- alice GET") == "http://proxy/denied-for-alice"
    assert r.handle("http://youporn.com/ 10.0.0.1/- boss GET") == ""
    assert seen[0] == (matcher, "alice", "youporn.com")


def test_unknown_category_in_classifier_is_fatal(matcher):
    r = Redirector(matcher, CategoryPolicy(block=("typo",)), "http://proxy/deny")
    with pytest.raises(UnknownCategoryError):
        r.run(io.StringIO("http://youporn.com/ 10.0.0.1/- - GET\n"), io.StringIO())


def test_multiline_target_is_cut_to_one_line(matcher):
    r = Redirector(matcher, lambda engine, req: "http://a/\nhttp://b/", CHECKF)
    stdout = io.StringIO()
    r.run(io.StringIO("http://youporn.com/ 10.0.0.1/- - GET\n"), stdout)
    assert stdout.getvalue() == "http://a/\n"


def test_block_ip_policy(matcher):
    r = Redirector(matcher, CategoryPolicy(block=("porn",), block_ip=True), "http://proxy/deny?cat=%t")
    assert r.handle("http://10.20.30.40/ 10.0.0.1/- - GET") == "http://proxy/deny?cat=ip"
    assert r.handle("http://youporn.com/ 10.0.0.1/- - GET") == "http://proxy/deny?cat=porn"


def test_allow_categories_win(matcher):
    r = Redirector(matcher, CategoryPolicy(allow=("porn",), block=("porn",)), "http://proxy/deny")
    assert r.handle("http://youporn.com/ 10.0.0.1/- - GET") == ""
