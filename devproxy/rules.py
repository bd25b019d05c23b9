import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional, Pattern, Tuple
from urllib.parse import quote, urlsplit

from .errors import ConfigurationError

# A path rewrite maps the original request target (path plus query) to the
# target sent upstream. It must be pure and total.
PathRewrite = Callable[[str], str]

DEFAULT_PORTS = {"http": 80, "https": 443}

_SLASH_RUN = re.compile(r"/{2,}")

# Characters left as they are when a rewritten target is percent-encoded
_TARGET_SAFE = "/?#[]@!$&'()*+,;=:%~"


def strip_prefix(prefix: str) -> PathRewrite:
    """
    Build a rewrite that removes a leading literal prefix.

    Args:
        prefix: Literal path prefix, e.g. "/api"

    Returns:
        Rewrite function; targets not starting with the prefix pass unchanged
    """
    def rewrite(path: str) -> str:
        if path.startswith(prefix):
            return path[len(prefix):]
        return path

    rewrite.__name__ = f"strip_prefix({prefix!r})"
    return rewrite


def _check_replacement(compiled: Pattern, replacement: str) -> None:
    """Expand the replacement against an empty match with the same groups."""
    names = {index: name for name, index in compiled.groupindex.items()}
    groups = "".join(
        f"(?P<{names[index]}>)" if index in names else "()"
        for index in range(1, compiled.groups + 1)
    )
    try:
        re.match(groups, "").expand(replacement)
    except (re.error, IndexError) as e:
        raise ConfigurationError(
            f"Invalid rewrite replacement {replacement!r} for {compiled.pattern!r}: {e}"
        ) from e


def regex_rewrite(pattern: str, replacement: str = "") -> PathRewrite:
    """
    Build a rewrite that substitutes the first match of a regular expression.

    The replacement uses Python ``re`` syntax (``\\1`` for groups).

    Raises:
        ConfigurationError: If the pattern does not compile, or the
            replacement refers to groups the pattern does not have
    """
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise ConfigurationError(f"Invalid rewrite pattern {pattern!r}: {e}") from e
    _check_replacement(compiled, replacement)

    def rewrite(path: str) -> str:
        return compiled.sub(replacement, path, count=1)

    rewrite.__name__ = f"regex_rewrite({pattern!r}, {replacement!r})"
    return rewrite


def _split_target(target: str) -> Tuple[str, str]:
    """Split a request target into its path and the '?'/'#' suffix."""
    for index, char in enumerate(target):
        if char in "?#":
            return target[:index], target[index:]
    return target, ""


@dataclass(frozen=True)
class Target:
    """Upstream origin a rule forwards to."""
    scheme: str
    host: str
    port: int
    base_path: str = ""
    verify_tls: bool = True

    @classmethod
    def parse(cls, url: str, verify_tls: bool = True) -> 'Target':
        """
        Parse a target URI such as ``http://127.0.0.1:8001``.

        Raises:
            ConfigurationError: If the URI is not an http(s) origin
        """
        if not isinstance(url, str) or not url:
            raise ConfigurationError(f"Target must be a non-empty URI, got {url!r}")
        parsed = urlsplit(url)
        scheme = parsed.scheme.lower()
        if scheme not in DEFAULT_PORTS:
            raise ConfigurationError(f"Unsupported target scheme in {url!r}")
        if not parsed.hostname:
            raise ConfigurationError(f"Target {url!r} has no host")
        if parsed.query or parsed.fragment:
            raise ConfigurationError(f"Target {url!r} must not carry a query or fragment")
        try:
            port = parsed.port or DEFAULT_PORTS[scheme]
        except ValueError as e:
            raise ConfigurationError(f"Invalid port in target {url!r}") from e
        try:
            host = parsed.hostname.encode("idna").decode("ascii")
        except UnicodeError as e:
            raise ConfigurationError(f"Invalid host in target {url!r}") from e

        return cls(
            scheme=scheme,
            host=host,
            port=port,
            base_path=quote(parsed.path.rstrip("/"), safe=_TARGET_SAFE),
            verify_tls=verify_tls,
        )

    @property
    def is_secure(self) -> bool:
        return self.scheme == "https"

    @property
    def authority(self) -> str:
        """Host header value for this target; the port is omitted when default."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port == DEFAULT_PORTS[self.scheme]:
            return host
        return f"{host}:{self.port}"

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.authority}"

    def join(self, upstream_path: str) -> str:
        """Prepend the target's base path to an upstream request target."""
        if not self.base_path:
            return upstream_path
        return self.base_path + upstream_path

    def __str__(self) -> str:
        return self.origin + self.base_path


@dataclass(frozen=True)
class Rule:
    """
    Immutable routing rule.

    ``prefix`` is either a literal path prefix starting with "/" (matched at
    path-segment granularity) or a regular expression starting with "^".
    """
    prefix: str
    target: Target
    change_origin: bool = False
    path_rewrite: Optional[PathRewrite] = None
    xfwd: bool = False
    auto_rewrite: bool = False
    _pattern: Optional[Pattern] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        if not isinstance(self.prefix, str) or not self.prefix:
            raise ConfigurationError("Rule prefix must be a non-empty string")
        if self.prefix.startswith("^"):
            try:
                object.__setattr__(self, "_pattern", re.compile(self.prefix))
            except re.error as e:
                raise ConfigurationError(f"Invalid prefix pattern {self.prefix!r}: {e}") from e
        elif not self.prefix.startswith("/"):
            raise ConfigurationError(f"Rule prefix {self.prefix!r} must start with '/' or '^'")

    @property
    def is_pattern(self) -> bool:
        return self._pattern is not None

    def matches(self, path: str) -> bool:
        """Check whether this rule applies to a request path (no query string)."""
        if self._pattern is not None:
            return self._pattern.match(path) is not None

        prefix = self.prefix
        if not path.startswith(prefix):
            return False
        if len(path) == len(prefix) or prefix.endswith("/"):
            return True
        return path[len(prefix)] == "/"


def rewrite(rule: Rule, original_target: str) -> str:
    """
    Compute the upstream request target for a matched rule.

    The rule's rewrite runs exactly once over the full original target, so
    the query string survives unless the rewrite consumes it. The result never
    comes back empty, without a leading slash, or with slash runs the
    original path did not have. Characters a request line cannot carry
    (non-ASCII, spaces, controls) are percent-encoded as UTF-8 when the
    rewrite introduced them.

    Args:
        rule: Matched rule
        original_target: Path and query as received from the client

    Returns:
        Upstream request target
    """
    result = rule.path_rewrite(original_target) if rule.path_rewrite else original_target
    if result == original_target:
        return result or "/"
    result = quote(result, safe=_TARGET_SAFE)

    if not result:
        return "/"
    if not result.startswith("/"):
        result = "/" + result

    path, suffix = _split_target(result)
    original_path, _ = _split_target(original_target)
    if "//" in path and "//" not in original_path:
        path = _SLASH_RUN.sub("/", path)
    return path + suffix


class RuleSet:
    """Ordered, immutable collection of rules; the first matching rule wins."""

    def __init__(self, rules: Iterable[Rule] = ()):
        self._rules: Tuple[Rule, ...] = tuple(rules)
        self._validate()

    def _validate(self) -> None:
        seen = set()
        for index, rule in enumerate(self._rules):
            if not isinstance(rule, Rule):
                raise ConfigurationError(f"Route #{index} is not a Rule: {rule!r}")
            if rule.prefix in seen:
                raise ConfigurationError(f"Duplicate route prefix {rule.prefix!r}")
            seen.add(rule.prefix)

            if rule.is_pattern:
                continue
            for earlier in self._rules[:index]:
                if not earlier.is_pattern and earlier.matches(rule.prefix):
                    raise ConfigurationError(
                        f"Route {rule.prefix!r} is unreachable: "
                        f"every path it matches is already taken by {earlier.prefix!r}"
                    )

    def match(self, path: str) -> Optional[Rule]:
        """
        Find the first rule whose prefix matches the path.

        Args:
            path: Request path; anything from '?' or '#' on is ignored

        Returns:
            Matching rule or None
        """
        path, _ = _split_target(path)
        for rule in self._rules:
            if rule.matches(path):
                return rule
        return None

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"RuleSet({[rule.prefix for rule in self._rules]!r})"
