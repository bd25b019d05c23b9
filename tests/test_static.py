import unittest
import tempfile
import sys
import os

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from devproxy.models import HTTPRequest
from devproxy.static import StaticAssets


def _request(method: str, target: str, accept: str = "*/*") -> HTTPRequest:
    head = f"{method} {target} HTTP/1.1\r\nHost: localhost:5173\r\nAccept: {accept}\r\n\r\n"
    return HTTPRequest.from_head(head.encode("latin-1"))


class TestStaticAssets(unittest.TestCase):
    """Test cases for the fallback asset server."""

    def setUp(self):
        self._tempdir = tempfile.TemporaryDirectory()
        self.root = self._tempdir.name
        os.makedirs(os.path.join(self.root, "src"))
        self._write("index.html", b"<!doctype html><div id=app></div>")
        self._write(os.path.join("src", "main.js"), b"console.log('hi')")
        self.assets = StaticAssets(self.root)

    def tearDown(self):
        self._tempdir.cleanup()

    def _write(self, name: str, data: bytes) -> None:
        with open(os.path.join(self.root, name), "wb") as f:
            f.write(data)

    def test_serves_file_with_content_type(self):
        # Act
        response = self.assets.serve(_request("GET", "/src/main.js?v=3"))

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.body, b"console.log('hi')")
        self.assertIn("javascript", response.headers.get("Content-Type"))
        self.assertEqual(response.headers.get("Content-Length"), str(len(response.body)))

    def test_directory_resolves_to_index(self):
        response = self.assets.serve(_request("GET", "/"))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers.get("Content-Type").startswith("text/html"))

    def test_missing_file(self):
        response = self.assets.serve(_request("GET", "/src/missing.js"))
        self.assertEqual(response.status_code, 404)

    def test_html_navigation_falls_back_to_index(self):
        response = self.assets.serve(_request("GET", "/settings/profile", accept="text/html,*/*"))
        self.assertEqual(response.status_code, 200)
        self.assertIn(b"id=app", response.body)

        no_fallback = StaticAssets(self.root, spa_fallback=False)
        self.assertEqual(no_fallback.serve(_request("GET", "/settings", accept="text/html")).status_code, 404)

    def test_traversal_is_refused(self):
        for target in ("/../etc/passwd", "/src/..%2F..%2Fetc%2Fpasswd", "/a%00b", "/src%00/main.js"):
            with self.subTest(target=target):
                self.assertEqual(self.assets.serve(_request("GET", target)).status_code, 404)

    def test_only_get_and_head(self):
        response = self.assets.serve(_request("POST", "/src/main.js"))
        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.headers.get("Allow"), "GET, HEAD")
        self.assertEqual(self.assets.serve(_request("HEAD", "/src/main.js")).status_code, 200)

    def test_no_root_answers_404(self):
        response = StaticAssets().serve(_request("GET", "/index.html"))
        self.assertEqual(response.status_code, 404)
        self.assertIsNone(StaticAssets().root)


if __name__ == '__main__':
    unittest.main()
