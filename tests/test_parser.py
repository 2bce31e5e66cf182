"""Tests for document parsing and version detection."""

import pytest

from pipelines.parser import DocumentParser, clean_text, detect_version

HTML = """
<html>
  <head><title>Cursor Docs</title></head>
  <body>
    <header>Site header</header>
    <nav><a href="/guide">Guide</a><a href="/api">API</a></nav>
    <main>
      <h1>Rules</h1>
      <h2>Project rules</h2>
      <p>Rules describe how the assistant edits files.</p>
      <pre>cursor --rules ./rules.md</pre>
      <ul><li>Keep rules short</li></ul>
    </main>
    <script>console.log("ignored")</script>
    <footer>Copyright</footer>
  </body>
</html>
"""


@pytest.fixture
def parser():
    return DocumentParser(use_trafilatura=False)


class TestDocumentParser:
    """HTML, markdown and plain text parsing."""

    def test_html_is_converted_to_markdown(self, parser):
        doc = parser.parse(HTML, "https://docs.example.com/rules", "text/html; charset=utf-8")

        assert doc.content_kind == "html"
        assert doc.title == "Rules"
        assert doc.section == "Project rules"
        assert "# Rules" in doc.text
        assert "## Project rules" in doc.text
        assert "- Keep rules short" in doc.text
        assert "```\ncursor --rules ./rules.md\n```" in doc.text

    def test_html_drops_chrome_and_scripts(self, parser):
        doc = parser.parse(HTML, "https://docs.example.com/rules", "text/html")

        assert "console.log" not in doc.text
        assert "Copyright" not in doc.text
        assert "Site header" not in doc.text

    def test_links_are_collected_from_navigation(self, parser):
        doc = parser.parse(HTML, "https://docs.example.com/rules", "text/html")
        assert doc.links == ["/guide", "/api"]

    def test_og_title_wins(self, parser):
        html = '<html><head><meta property="og:title" content="OG Title"></head><body><h1>H1</h1></body></html>'
        assert parser.parse(html, "https://x.example.com", "text/html").title == "OG Title"

    def test_breadcrumb_section(self, parser):
        html = ('<html><body><div class="breadcrumbs">Docs / Editor / Rules</div>'
                '<main><p>Body</p></main></body></html>')
        doc = parser.parse(html, "https://x.example.com", "text/html")
        assert doc.section == "Docs > Editor > Rules"

    def test_markdown_by_extension(self, parser):
        doc = parser.parse("# Title\n\n## First\n\nBody\n\n\n\nMore", "https://x.example.com/a.md")

        assert doc.content_kind == "markdown"
        assert doc.title == "Title"
        assert doc.section == "First"
        assert "\n\n\n" not in doc.text

    def test_plain_text(self, parser):
        doc = parser.parse("\nFirst line\nsecond line  \n", "https://x.example.com/notes", "text/plain")

        assert doc.content_kind == "text"
        assert doc.title == "First line"
        assert doc.text == "First line\nsecond line"

    def test_clean_text(self):
        assert clean_text("a  \r\n\n\n\nb\n") == "a\n\nb"


class TestDetectVersion:
    """Version detection from URLs and text."""

    @pytest.mark.parametrize("url,expected", [
        ("https://docs.example.com/v1.2/guide", "1.2"),
        ("https://docs.example.com/version-3/guide", "3"),
        ("https://docs.example.com/2.1.0/api", "2.1.0"),
        ("https://docs.example.com/guide?version=4.1", "4.1"),
    ])
    def test_version_from_url(self, url, expected):
        assert detect_version(url) == expected

    def test_version_from_text(self):
        assert detect_version("https://docs.example.com/guide", text="This is version 1.4 of the docs") == "1.4"

    def test_years_are_ignored(self):
        assert detect_version("https://docs.example.com/guide", text="Released in version 2024") == "latest"

    def test_default_is_latest(self):
        assert detect_version("https://docs.example.com/guide", title="Guide", text="No numbers here") == "latest"
