"""Tests for page assembly and parse-time DOM snapshots."""

from evaluation.document import build_document, parse_artifact, parse_dom, parse_text
from evaluation.models import CodeBundle


def test_parse_dom_normalizes():
    tree = parse_dom(
        '<div data-testid="root" id="main">\n   Hello   <b>big</b>\n world '
        "<script>var x = 1;</script><style>b{}</style></div>"
    )
    assert tree.tag == "body"
    div = tree.children[0]
    assert div.attributes == {"id": "main"}
    assert div.text_runs == ["Hello", "world"]
    assert [c.tag for c in div.children] == ["b"]


def test_parse_dom_full_document_uses_body():
    tree = parse_dom("<!DOCTYPE html><html><head><title>T</title></head><body><h1>Hi</h1></body></html>")
    assert tree.tag == "body"
    assert [c.tag for c in tree.children] == ["h1"]


def test_parse_text_lines():
    assert parse_text("<h1>Title</h1><p>Some   text</p><script>alert(1)</script>") == ["Title", "Some text"]


def test_build_document_wraps_script():
    page = build_document(CodeBundle(html="<p>x</p>", css="p { color: red; }", js="var s = '</script>';"))
    assert "p { color: red; }" in page
    assert "<p>x</p>" in page
    assert "'<\\/script>'" in page
    assert "box-sizing: border-box" in page


def test_parse_artifact_has_blank_screenshot():
    artifact = parse_artifact(CodeBundle(html="<p>Hi</p>"), 30, 20)
    assert artifact.screenshot.width == 30
    assert artifact.screenshot.height == 20
    assert artifact.text_content == ["Hi"]
    assert artifact.dom_tree.children[0].tag == "p"


def test_page_runtime_is_installed_before_bundle_code():
    page = build_document(CodeBundle(html="<p>x</p>", css="p { color: red; }", js="run();"))

    runtime_at = page.index("__snapshotDom")
    assert runtime_at < page.index("p { color: red; }")
    assert runtime_at < page.index("<p>x</p>")
    assert runtime_at < page.index("run();")
    assert "writable: false, configurable: false" in page
    assert "window.__reportRenderError('script', error);" in page
