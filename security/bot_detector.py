import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from security.events import EventSink, NullEventSink
from security.fingerprint import FPID_COOKIE, FingerprintSigner, FpidState

LIKELY_BOT_THRESHOLD = 0.7
LOOPBACK_ADDRESSES = {"127.0.0.1", "::1"}
RARE_METHODS = {"TRACE", "TRACK", "CONNECT", "OPTIONS"}

# lower-case user-agent substring -> display name; first match wins
BOT_NAMES: Dict[str, str] = {
    "adsbot": "Google AdsBot",
    "ahrefsbot": "Ahrefs",
    "amazonbot": "AmazonBot",
    "applebot": "AppleBot",
    "archive.org_bot": "Internet Archive",
    "baiduspider": "Baidu",
    "bingbot": "BingBot",
    "bitlybot": "Bitly",
    "bot": "Generic Bot",
    "bytespider": "ByteDance Spider",
    "censysinspect": "Censys",
    "chrome-lighthouse": "Google Lighthouse",
    "cloudflare": "Cloudflare",
    "curl": "cURL",
    "datadog": "Datadog Agent",
    "duckduckbot": "DuckDuckGo",
    "facebookexternalhit": "Facebook Crawler",
    "fetch": "Generic Fetch Client",
    "googlebot": "Googlebot",
    "google": "Google (General)",
    "gptbot": "OpenAI GPTBot",
    "headless": "Headless Browser",
    "httpclient": "HTTP Client",
    "ia_archiver": "Alexa (Amazon)",
    "java/": "Java Client",
    "libwww-perl": "libwww-perl",
    "mj12bot": "Majestic-12",
    "monitoring": "Monitoring Agent",
    "nagios": "Nagios Checker",
    "netcraft": "Netcraft",
    "nutch": "Apache Nutch",
    "petalbot": "Huawei PetalBot",
    "phantomjs": "PhantomJS",
    "pingdom": "Pingdom",
    "postman": "Postman Runtime",
    "python": "Python Script",
    "scrapy": "Scrapy Framework",
    "semrush": "SEMRush",
    "shodan": "Shodan Bot",
    "slackbot": "Slack Bot",
    "sogou": "Sogou Spider",
    "spider": "Generic Spider",
    "uptimerobot": "UptimeRobot",
    "wget": "Wget",
    "whatsapp": "WhatsApp Bot",
    "yahoo! slurp": "Yahoo Slurp",
    "yandex": "Yandex Bot",
    "zoominfo": "ZoomInfo Bot",
}

ATTACK_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"(union\s+select|select\s+\*|insert\s+into|drop\s+table)", re.I),
    re.compile(r"(%27)|(')|(--)|(%23)|(#)", re.I),
    re.compile(r"(<script|javascript:|onerror=|alert\s*\()", re.I),
    re.compile(r"(php://|data://|base64_decode|eval\s*\(|assert\s*\(|cmd=)", re.I),
    re.compile(r"(\.\./|\.\.\\)"),
)

# Scanner probe targets. Informational only: not part of score().
SUSPICIOUS_PATH_NEEDLES: Tuple[str, ...] = (
    ".env", ".git", ".svn", ".ds_store", "id_rsa", "aws/credentials", "docker-compose",
    "composer.json", "composer.lock", "package.json", "yarn.lock",
    "config.php", "config.json", "settings.py", "settings.ini",
    ".htaccess", ".htpasswd", "web.config", "httpd.conf",
    "db.sql", "database.sql", "dump.sql", "db_backup", "sql.gz", "backup.tar",
    "wp-admin", "wp-login", "wp-content", "wp-config", "xmlrpc.php",
    "install.php", "upgrade.php", "phpinfo", "phpmyadmin", "xdebug",
    "server-status", "server-info", "cgi-bin", "shell.php", "cmd.php",
    "../", "..\\", "%2e%2e%2f", "%252e%252e%255c",
    ".bak", ".old", ".swp", ".orig",
)


@dataclass(frozen=True)
class RequestSnapshot:
    """Immutable view of the request fields the scorer reads."""

    method: str = "GET"
    path: str = "/"
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    query: Sequence[Tuple[str, str]] = ()
    form: Sequence[Tuple[str, str]] = ()
    remote_addr: str = ""

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "") or ""

    def payload(self) -> Iterable[Tuple[str, str]]:
        yield from self.query
        yield from self.form

    def form_value(self, name: str) -> str:
        for key, value in self.form:
            if key == name:
                return value
        return ""

    @classmethod
    def from_request(cls, request) -> "RequestSnapshot":
        """Build from a werkzeug/Flask request."""
        form = request.form.items(multi=True) if request.method == "POST" else ()
        return cls(
            method=(request.method or "").upper(),
            path=request.full_path.rstrip("?"),
            headers={k.lower(): v for k, v in request.headers.items()},
            cookies=dict(request.cookies),
            query=tuple(request.args.items(multi=True)),
            form=tuple(form),
            remote_addr=request.remote_addr or "",
        )


@dataclass(frozen=True)
class BotConfig:
    sensitive_paths: Tuple[str, ...] = ()
    honeypot_field: str = "hp_start"

    @classmethod
    def from_mapping(cls, cfg: Mapping) -> "BotConfig":
        return cls(
            sensitive_paths=tuple(p.lower() for p in cfg.get("BOT_SENSITIVE_PATHS") or ()),
            honeypot_field=cfg.get("BOT_HONEYPOT_FIELD", "hp_start"),
        )


@dataclass(frozen=True)
class BotScore:
    score: float
    reasons: Dict[str, Dict[str, float]]

    @property
    def is_likely_bot(self) -> bool:
        return self.score >= LIKELY_BOT_THRESHOLD


FPID_WEIGHTS = {
    FpidState.VALID: 0.0,
    FpidState.UNSIGNED: 0.1,
    FpidState.MISSING: 0.3,
    FpidState.MALFORMED: 0.3,
    FpidState.FORGED: 0.5,
}


class BotScorer:
    """
    Deterministic bot-likelihood score for a single request.

    Each check is independent and side-effect free apart from a
    fire-and-forget event when it triggers.
    """

    def __init__(
        self,
        signer: FingerprintSigner,
        config: Optional[BotConfig] = None,
        rate_limited: Optional[Callable[[RequestSnapshot], bool]] = None,
        events: Optional[EventSink] = None,
        bot_names: Optional[Mapping[str, str]] = None,
    ):
        self.signer = signer
        self.config = config or BotConfig()
        self.rate_limited = rate_limited
        self.events = events or NullEventSink()
        self.bot_names = dict(BOT_NAMES if bot_names is None else bot_names)
        self._sensitive_paths = list(dict.fromkeys(self.config.sensitive_paths))

    # -- configuration -----------------------------------------------------

    def register_sensitive_paths(self, paths: Iterable[str]) -> None:
        for p in paths:
            p = p.lower()
            if p not in self._sensitive_paths:
                self._sensitive_paths.append(p)

    def reset_sensitive_paths(self) -> None:
        self._sensitive_paths = []

    @property
    def sensitive_paths(self) -> Tuple[str, ...]:
        return tuple(self._sensitive_paths)

    def register_bot(self, key: str, name: str) -> None:
        self.bot_names[key.lower()] = name

    def bot_name(self, user_agent: str) -> str:
        ua = (user_agent or "").lower()
        for key, name in self.bot_names.items():
            if key in ua:
                return name
        return "Unknown"

    # -- individual signals ------------------------------------------------

    def _fire(self, name: str, req: RequestSnapshot, **data) -> None:
        data.setdefault("ip", req.remote_addr)
        data.setdefault("path", req.path)
        self.events.fire(f"bot.{name}", data)

    def is_suspicious_user_agent(self, req: RequestSnapshot) -> bool:
        ua = req.header("user-agent")
        if not ua.strip():
            self._fire("user_agent.empty", req)
            return True
        name = self.bot_name(ua)
        if name != "Unknown":
            self._fire("user_agent.known_bot", req, bot_name=name)
            return True
        return False

    def is_missing_accept_headers(self, req: RequestSnapshot) -> bool:
        missing = [h for h in ("accept", "accept-language") if not req.header(h)]
        if missing:
            self._fire("headers.missing_accept", req, missing=missing)
            return True
        return False

    def is_post_without_referer(self, req: RequestSnapshot) -> bool:
        if req.method == "POST" and not req.header("referer"):
            self._fire("request.post_without_referer", req)
            return True
        return False

    def is_hitting_sensitive_path(self, req: RequestSnapshot) -> bool:
        path = req.path.lower()
        for needle in self._sensitive_paths:
            if needle in path:
                self._fire("request.sensitive_path", req, match=needle)
                return True
        return False

    def is_rate_limited(self, req: RequestSnapshot) -> bool:
        if self.rate_limited is None:
            return False
        if self.rate_limited(req):
            self._fire("request.rate_limited", req)
            return True
        return False

    def has_suspicious_headers(self, req: RequestSnapshot) -> bool:
        if req.remote_addr in LOOPBACK_ADDRESSES:
            return False
        if "mozilla" not in req.header("user-agent").lower():
            return False
        missing = [h for h in ("accept-language", "accept-encoding", "sec-ch-ua") if not req.header(h)]
        if missing:
            self._fire("headers.browser_missing_typical", req, missing=missing)
            return True
        return False

    def has_no_cookies(self, req: RequestSnapshot) -> bool:
        if not req.cookies:
            self._fire("headers.no_cookies", req)
            return True
        return False

    def is_using_rare_method(self, req: RequestSnapshot) -> bool:
        if req.method in RARE_METHODS:
            self._fire("request.rare_method", req, method=req.method)
            return True
        return False

    def is_invalid_origin(self, req: RequestSnapshot) -> bool:
        origin = req.header("origin")
        host = req.header("host")
        if origin and host not in origin:
            self._fire("headers.invalid_origin", req, origin=origin, expected_host=host)
            return True
        return False

    def is_honeypot(self, req: RequestSnapshot) -> bool:
        field_name = self.config.honeypot_field
        if req.form_value(field_name):
            self._fire("payload.honeypot", req, field=field_name)
            return True
        return False

    def is_suspicious_payload(self, req: RequestSnapshot) -> bool:
        for key, value in req.payload():
            if not isinstance(value, str):
                continue
            for pattern in ATTACK_PATTERNS:
                if pattern.search(value):
                    self._fire("payload.attack_pattern", req, key=key, pattern=pattern.pattern)
                    return True
        return False

    def is_suspicious_path(self, req: RequestSnapshot) -> bool:
        path = req.path.lower()
        for needle in SUSPICIOUS_PATH_NEEDLES:
            if needle in path:
                self._fire("request.suspicious_path", req, needle=needle)
                return True
        return False

    def is_malicious_request(self, req: RequestSnapshot) -> bool:
        return self.is_suspicious_path(req) or self.is_suspicious_payload(req)

    def fpid_state(self, req: RequestSnapshot) -> FpidState:
        return self.signer.classify(req.cookies.get(FPID_COOKIE, ""))

    # -- aggregate ---------------------------------------------------------

    def score(self, req: RequestSnapshot) -> BotScore:
        checks = (
            ("useragent", "is_suspicious_user_agent", 0.4),
            ("headers", "is_missing_accept_headers", 0.2),
            ("request", "is_post_without_referer", 0.1),
            ("request", "is_hitting_sensitive_path", 0.1),
            ("request", "is_rate_limited", 0.2),
            ("headers", "has_suspicious_headers", 0.2),
            ("headers", "has_no_cookies", 0.3),
            ("request", "is_using_rare_method", 0.3),
            ("headers", "is_invalid_origin", 0.1),
            ("payload", "is_honeypot", 0.3),
            ("payload", "is_suspicious_payload", 0.4),
        )
        total = 0.0
        reasons: Dict[str, Dict[str, float]] = {}
        for category, check, weight in checks:
            if getattr(self, check)(req):
                total += weight
                reasons.setdefault(category, {})[check] = weight

        state = self.fpid_state(req)
        weight = FPID_WEIGHTS[state]
        if weight:
            total += weight
            reasons.setdefault("fingerprint", {})[f"fpid_state:{state.value}"] = weight

        # rounding keeps threshold comparisons stable across summation order
        final = round(min(total, 1.0), 6)
        self._fire("score", req, score=final, reasons=reasons, user_agent=req.header("user-agent"))
        return BotScore(final, reasons)

    def is_likely_bot(self, req: RequestSnapshot) -> bool:
        return self.score(req).is_likely_bot

    def user_info(self, req: RequestSnapshot) -> dict:
        return {
            "ip": req.remote_addr,
            "fingerprint": self.signer.fingerprint(req.cookies.get(FPID_COOKIE, "")),
            "user_agent": req.header("user-agent"),
            "referer": req.header("referer"),
        }
