import unittest
import sys
import os

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from devproxy.errors import ConfigurationError
from devproxy.models import HTTPRequest
from devproxy.rules import Rule, RuleSet, Target, regex_rewrite, rewrite, strip_prefix

BACKEND = Target.parse("http://127.0.0.1:8001")
OTHER = Target.parse("http://localhost:8002")


class TestMatcher(unittest.TestCase):
    """Test cases for RuleSet.match."""

    def test_first_match_wins(self):
        # Arrange
        specific = Rule("/api/v2", OTHER)
        general = Rule("/api", BACKEND)
        rules = RuleSet([specific, general])

        # Act and Assert
        self.assertIs(rules.match("/api/v2/users"), specific)
        self.assertIs(rules.match("/api/v1/users"), general)
        self.assertIs(rules.match("/api"), general)

    def test_overlapping_patterns_resolve_in_declared_order(self):
        first = Rule("^/ch", BACKEND)
        second = Rule("/chat", OTHER)
        rules = RuleSet([first, second])
        self.assertIs(rules.match("/chat"), first)

    def test_matches_whole_segments_only(self):
        rules = RuleSet([Rule("/api", BACKEND)])
        self.assertIsNotNone(rules.match("/api/"))
        self.assertIsNotNone(rules.match("/api/users/42"))
        self.assertIsNone(rules.match("/apiary"))
        self.assertIsNone(rules.match("/v1/api"))

    def test_query_string_is_not_matched(self):
        rules = RuleSet([Rule("/api", BACKEND)])
        self.assertIsNotNone(rules.match("/api?x=/other"))
        self.assertIsNone(rules.match("/static?next=/api"))

    def test_trailing_slash_prefix(self):
        rules = RuleSet([Rule("/assets/", BACKEND)])
        self.assertIsNotNone(rules.match("/assets/app.js"))
        self.assertIsNone(rules.match("/assets"))

    def test_pattern_prefix(self):
        rules = RuleSet([Rule("^/chat", BACKEND)])
        self.assertIsNotNone(rules.match("/chat/room/1"))
        self.assertIsNone(rules.match("/rooms/chat"))

    def test_no_rules_match_nothing(self):
        self.assertIsNone(RuleSet().match("/"))

    def test_match_is_side_effect_free(self):
        rules = RuleSet([Rule("/api", BACKEND), Rule("/chat", OTHER)])
        before = list(rules)
        for path in ("/api/x", "/chat", "/nothing"):
            rules.match(path)
        self.assertEqual(list(rules), before)
        self.assertEqual(len(rules), 2)


class TestRuleValidation(unittest.TestCase):
    """Invalid rule sets fail at construction time."""

    def test_invalid_prefixes(self):
        for prefix in ("", "api", "^(unclosed"):
            with self.subTest(prefix=prefix):
                with self.assertRaises(ConfigurationError):
                    Rule(prefix, BACKEND)

    def test_duplicate_prefix(self):
        with self.assertRaises(ConfigurationError):
            RuleSet([Rule("/api", BACKEND), Rule("/api", OTHER)])

    def test_unreachable_rule(self):
        with self.assertRaises(ConfigurationError):
            RuleSet([Rule("/api", BACKEND), Rule("/api/v2", OTHER)])
        with self.assertRaises(ConfigurationError):
            RuleSet([Rule("/", BACKEND), Rule("/chat", OTHER)])

    def test_reachable_orderings_accepted(self):
        RuleSet([Rule("/api/v2", OTHER), Rule("/api", BACKEND)])
        RuleSet([Rule("/api/", OTHER), Rule("/api", BACKEND)])
        RuleSet([Rule("/api", BACKEND), Rule("/apiary", OTHER)])

    def test_rules_are_immutable(self):
        rule = Rule("/api", BACKEND)
        with self.assertRaises(AttributeError):
            rule.prefix = "/other"


class TestRewriter(unittest.TestCase):
    """Test cases for the rewrite step."""

    def test_identity_keeps_path_and_query(self):
        rule = Rule("/echo", BACKEND)
        self.assertEqual(rewrite(rule, "/echo/a/b?x=1&y=%20z"), "/echo/a/b?x=1&y=%20z")

    def test_strip_prefix(self):
        rule = Rule("/api", BACKEND, path_rewrite=strip_prefix("/api"))
        self.assertEqual(rewrite(rule, "/api/users/42"), "/users/42")
        self.assertEqual(rewrite(rule, "/api/users?page=2"), "/users?page=2")
        self.assertEqual(rewrite(rule, "/api"), "/")
        self.assertEqual(rewrite(rule, "/api?x=1"), "/?x=1")

    def test_regex_rewrite_replaces_first_occurrence(self):
        rewrite_api = regex_rewrite(r"^/api", "")
        self.assertEqual(rewrite_api("/api/api/x"), "/api/x")
        self.assertEqual(rewrite_api("/other/api"), "/other/api")
        self.assertEqual(regex_rewrite(r"^/v(\d+)/", r"/version-\1/")("/v2/items"), "/version-2/items")

    def test_invalid_regex_rewrite(self):
        with self.assertRaises(ConfigurationError):
            regex_rewrite("(")

    def test_replacement_must_fit_pattern_groups(self):
        for pattern, replacement in ((r"^/api", r"\1"), (r"^/(v\d+)", r"/\2"),
                                     (r"^/(?P<ver>v\d+)", r"/\g<version>"), (r"^/api", r"\q")):
            with self.subTest(pattern=pattern, replacement=replacement):
                with self.assertRaises(ConfigurationError):
                    regex_rewrite(pattern, replacement)

        named = regex_rewrite(r"^/(?P<ver>v\d+)/(x)", r"/\g<ver>-\2")
        self.assertEqual(named("/v3/x/y"), "/v3-x/y")

    def test_rewritten_target_is_percent_encoded(self):
        rule = Rule("/api", BACKEND, path_rewrite=regex_rewrite(r"^/api", "/\u4e2d"))
        self.assertEqual(rewrite(rule, "/api/a b?q=%20"), "/%E4%B8%AD/a%20b?q=%20")

        request = HTTPRequest.from_head(b"GET /api HTTP/1.1\r\nHost: x\r\n\r\n").bind(rule)
        self.assertEqual(request.upstream_path, "/%E4%B8%AD")

    def test_result_normalization(self):
        cases = [
            (lambda path: "", "/"),
            (lambda path: "users", "/users"),
            (lambda path: "?q=1", "/?q=1"),
            (lambda path: "//users//42", "/users/42"),
            (lambda path: "/v2/" + path, "/v2/api/x"),
        ]
        for function, expected in cases:
            with self.subTest(expected=expected):
                rule = Rule("/api", BACKEND, path_rewrite=function)
                self.assertEqual(rewrite(rule, "/api/x"), expected)

    def test_existing_double_slashes_survive(self):
        rule = Rule("/files", BACKEND)
        self.assertEqual(rewrite(rule, "/files//raw"), "/files//raw")

    def test_rewrite_applied_once_per_request(self):
        # Arrange
        calls = []

        def counting(path):
            calls.append(path)
            return path.replace("/api", "", 1)

        rule = Rule("/api", BACKEND, path_rewrite=counting)
        request = HTTPRequest.from_head(b"GET /api/api/x HTTP/1.1\r\nHost: x\r\n\r\n")

        # Act
        bound = request.bind(rule)

        # Assert
        self.assertEqual(calls, ["/api/api/x"])
        self.assertEqual(bound.upstream_path, "/api/x")


class TestTarget(unittest.TestCase):
    """Test cases for target parsing."""

    def test_authority(self):
        self.assertEqual(Target.parse("http://127.0.0.1:8001").authority, "127.0.0.1:8001")
        self.assertEqual(Target.parse("http://example.test:80").authority, "example.test")
        self.assertEqual(Target.parse("https://example.test").port, 443)
        self.assertEqual(Target.parse("http://[::1]:8001").authority, "[::1]:8001")
        self.assertEqual(Target.parse("HTTP://Localhost:8001").origin, "http://localhost:8001")
        self.assertEqual(Target.parse("http://b\u00fccher.test").host, "xn--bcher-kva.test")

    def test_base_path(self):
        target = Target.parse("http://127.0.0.1:8001/backend/")
        self.assertEqual(target.base_path, "/backend")
        self.assertEqual(target.join("/users"), "/backend/users")
        self.assertEqual(str(target), "http://127.0.0.1:8001/backend")

    def test_invalid_targets(self):
        for url in ("", "127.0.0.1:8001", "ftp://host", "http://", "http://host:99999",
                    "http://host/?q=1", None):
            with self.subTest(url=url):
                with self.assertRaises(ConfigurationError):
                    Target.parse(url)


if __name__ == '__main__':
    unittest.main()
