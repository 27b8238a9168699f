import hashlib

import pytest
from flask import Flask

from security.bot_detector import BotConfig, BotScorer, RequestSnapshot
from security.fingerprint import FingerprintSigner

RAW = hashlib.sha256(b"a real browser").hexdigest()
CHROME = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"


def snapshot(signer, method="GET", path="/", headers=None, cookies=None, query=(), form=(), ip="203.0.113.5", drop=()):
    base_headers = {
        "user-agent": CHROME,
        "accept": "text/html",
        "accept-language": "en-US,en;q=0.9",
        "accept-encoding": "gzip, br",
        "sec-ch-ua": '"Chromium";v="120"',
        "host": "example.com",
    }
    base_headers.update(headers or {})
    for name in drop:
        base_headers.pop(name, None)
    if cookies is None:
        cookies = {"fpid": f"{RAW}|{signer.sign(RAW)}"}
    return RequestSnapshot(
        method=method,
        path=path,
        headers=base_headers,
        cookies=cookies,
        query=tuple(query),
        form=tuple(form),
        remote_addr=ip,
    )


@pytest.fixture
def scorer(signer, events):
    return BotScorer(signer, BotConfig(sensitive_paths=("/wp-login",)), events=events)


def test_clean_browser_scores_zero(scorer, signer):
    result = scorer.score(snapshot(signer))
    assert result.score == 0.0
    assert result.reasons == {}
    assert not result.is_likely_bot


def test_empty_user_agent(scorer, signer):
    result = scorer.score(snapshot(signer, headers={"user-agent": ""}))
    assert result.score == 0.4
    assert result.reasons == {"useragent": {"is_suspicious_user_agent": 0.4}}


def test_known_bot_user_agent(scorer, signer, events):
    result = scorer.score(snapshot(signer, headers={"user-agent": "curl/8.4.0"}))
    assert result.reasons["useragent"]["is_suspicious_user_agent"] == 0.4
    assert events.find("bot.user_agent.known_bot")[0]["bot_name"] == "cURL"


def test_bot_name_lookup(scorer):
    assert scorer.bot_name("Mozilla/5.0 (compatible; Googlebot/2.1)") == "Generic Bot"
    assert scorer.bot_name("Wget/1.21") == "Wget"
    assert scorer.bot_name(CHROME) == "Unknown"
    scorer.register_bot("MyCrawler", "In-house crawler")
    assert scorer.bot_name("mycrawler/1.0") == "In-house crawler"


def test_missing_accept_headers(scorer, signer):
    result = scorer.score(snapshot(signer, drop=("accept",), ip="127.0.0.1"))
    assert result.score == 0.2
    assert "is_missing_accept_headers" in result.reasons["headers"]


def test_post_without_referer(scorer, signer):
    result = scorer.score(snapshot(signer, method="POST"))
    assert result.reasons == {"request": {"is_post_without_referer": 0.1}}


def test_sensitive_path(scorer, signer):
    assert scorer.score(snapshot(signer, path="/WP-LOGIN.php")).score == 0.1
    scorer.reset_sensitive_paths()
    assert scorer.score(snapshot(signer, path="/wp-login.php")).score == 0.0
    scorer.register_sensitive_paths(["/Admin", "/admin"])
    assert scorer.sensitive_paths == ("/admin",)
    assert scorer.score(snapshot(signer, path="/admin/users")).score == 0.1


def test_rate_limit_predicate(signer):
    seen = []

    def limited(req):
        seen.append(req.remote_addr)
        return True

    scorer = BotScorer(signer, rate_limited=limited)
    result = scorer.score(snapshot(signer))
    assert result.reasons == {"request": {"is_rate_limited": 0.2}}
    assert seen == ["203.0.113.5"]


def test_browser_missing_typical_headers(scorer, signer):
    result = scorer.score(snapshot(signer, drop=("sec-ch-ua",)))
    assert result.reasons == {"headers": {"has_suspicious_headers": 0.2}}


def test_loopback_exempt_from_typical_header_check(scorer, signer):
    assert scorer.score(snapshot(signer, drop=("sec-ch-ua",), ip="::1")).score == 0.0


def test_no_cookies_and_missing_fingerprint(scorer, signer):
    result = scorer.score(snapshot(signer, cookies={}))
    assert result.score == 0.6
    assert result.reasons["headers"] == {"has_no_cookies": 0.3}
    assert result.reasons["fingerprint"] == {"fpid_state:missing": 0.3}


@pytest.mark.parametrize(
    "fpid,expected",
    [
        (RAW, 0.1),
        ("malformed!", 0.3),
        (f"{RAW}|{'0' * 64}", 0.5),
    ],
)
def test_fingerprint_state_weights(scorer, signer, fpid, expected):
    result = scorer.score(snapshot(signer, cookies={"fpid": fpid}))
    assert result.score == expected


def test_unconfigured_signer_degrades_to_malformed(signer):
    scorer = BotScorer(FingerprintSigner())
    cookie = {"fpid": f"{RAW}|{signer.sign(RAW)}"}
    result = scorer.score(snapshot(signer, cookies=cookie))
    assert result.reasons == {"fingerprint": {"fpid_state:malformed": 0.3}}


@pytest.mark.parametrize("method", ["TRACE", "TRACK", "CONNECT", "OPTIONS"])
def test_rare_methods(scorer, signer, method):
    assert scorer.score(snapshot(signer, method=method)).reasons == {"request": {"is_using_rare_method": 0.3}}


def test_invalid_origin(scorer, signer):
    assert scorer.score(snapshot(signer, headers={"origin": "https://example.com"})).score == 0.0
    result = scorer.score(snapshot(signer, headers={"origin": "https://evil.test"}))
    assert result.reasons == {"headers": {"is_invalid_origin": 0.1}}


def test_honeypot_alone_is_not_a_bot(scorer, signer):
    req = snapshot(
        signer, method="POST", headers={"referer": "https://example.com/form"}, form=[("hp_start", "filled")]
    )
    result = scorer.score(req)
    assert result.score >= 0.3
    assert result.reasons == {"payload": {"is_honeypot": 0.3}}
    assert scorer.is_likely_bot(req) is False


def test_honeypot_combined_with_other_signals(scorer, signer):
    req = snapshot(signer, method="POST", form=[("hp_start", "x"), ("comment", "<script>alert(1)</script>")])
    result = scorer.score(req)
    assert result.score >= 0.7
    assert result.is_likely_bot


@pytest.mark.parametrize(
    "value",
    ["1 UNION SELECT password FROM users", "<script>x</script>", "../../etc/passwd", "O'Brien", "eval(atob(x))"],
)
def test_attack_patterns(scorer, signer, value):
    result = scorer.score(snapshot(signer, query=[("q", value)]))
    assert result.reasons == {"payload": {"is_suspicious_payload": 0.4}}


def test_benign_payload(scorer, signer):
    assert scorer.score(snapshot(signer, query=[("q", "hello world")])).score == 0.0


def test_score_is_capped_and_monotonic(signer):
    scorer = BotScorer(signer, BotConfig(sensitive_paths=("/secret",)), rate_limited=lambda req: True)
    steps = [
        dict(),
        dict(method="POST"),
        dict(method="POST", path="/secret"),
        dict(method="POST", path="/secret", cookies={"a": "b"}),
        dict(method="POST", path="/secret", cookies={}),
        dict(method="POST", path="/secret", cookies={}, form=[("hp_start", "1")]),
        dict(method="POST", path="/secret", cookies={}, form=[("hp_start", "1"), ("x", "drop table users")]),
        dict(method="POST", path="/secret", cookies={}, form=[("hp_start", "1")], headers={"user-agent": ""}),
    ]
    scores = [scorer.score(snapshot(signer, **kw)).score for kw in steps]
    assert scores == sorted(scores)
    assert all(0.0 <= s <= 1.0 for s in scores)
    assert scores[-1] == 1.0


def test_score_is_deterministic(scorer, signer):
    req = snapshot(signer, method="OPTIONS", cookies={"fpid": RAW})
    first = scorer.score(req)
    second = scorer.score(req)
    assert first == second


def test_one_event_per_triggered_signal(scorer, signer, events):
    events.events.clear()
    scorer.score(snapshot(signer, method="TRACE", headers={"origin": "https://evil.test"}))
    bot_events = [n for n in events.names() if n.startswith("bot.")]
    assert bot_events == ["bot.request.rare_method", "bot.headers.invalid_origin", "bot.score"]
    assert events.find("bot.score")[0]["score"] == 0.4


def test_failing_sink_does_not_break_scoring(signer):
    from security.events import EventSink

    class Exploding(EventSink):
        def emit(self, name, data):
            raise RuntimeError("sink down")

    scorer = BotScorer(signer, events=Exploding())
    assert scorer.score(snapshot(signer, headers={"user-agent": ""})).score == 0.4


def test_suspicious_path_is_informational(scorer, signer):
    req = snapshot(signer, path="/.env")
    assert scorer.is_suspicious_path(req)
    assert scorer.is_malicious_request(req)
    assert scorer.score(req).score == 0.0
    assert not scorer.is_malicious_request(snapshot(signer, path="/about"))


def test_user_info(scorer, signer):
    info = scorer.user_info(snapshot(signer, headers={"referer": "https://example.com/"}))
    assert info == {
        "ip": "203.0.113.5",
        "fingerprint": RAW,
        "user_agent": CHROME,
        "referer": "https://example.com/",
    }


def test_snapshot_from_flask_request():
    app = Flask(__name__)
    with app.test_request_context(
        "/search?q=1&q=2",
        method="POST",
        data={"hp_start": "", "name": "x"},
        headers={"User-Agent": CHROME, "Cookie": "fpid=abc"},
        environ_base={"REMOTE_ADDR": "198.51.100.7"},
    ):
        from flask import request

        snap = RequestSnapshot.from_request(request)

    assert snap.method == "POST"
    assert snap.path == "/search?q=1&q=2"
    assert snap.header("User-Agent") == CHROME
    assert snap.cookies == {"fpid": "abc"}
    assert snap.query == (("q", "1"), ("q", "2"))
    assert ("name", "x") in snap.form
    assert snap.remote_addr == "198.51.100.7"
