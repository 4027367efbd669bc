"""Document assembly and DOM snapshot extraction.

The page served to the browser mirrors the live preview learners see while
coding: a small CSS reset, the bundle's CSS, the bundle's HTML as the body,
and the bundle's JS wrapped so a throwing script cannot stop the page from
rendering.

DOM snapshots are produced two ways with the same normalization rules:
in-page (SERIALIZE_DOM_JS, after scripts ran) and at parse time
(parse_dom, BeautifulSoup, no script execution) for when a render fails.
"""

from bs4 import BeautifulSoup, Tag
from bs4.element import NavigableString, PreformattedString

from .models import CodeBundle, PixelBuffer, RenderArtifact, RenderError, SerializedNode

# Attributes that only exist for test tooling never take part in comparison.
INSTRUMENTATION_ATTRIBUTES = frozenset({
    "data-testid",
    "data-test",
    "data-test-id",
    "data-cy",
    "data-qa",
})

SKIPPED_TAGS = frozenset({
    "script",
    "style",
    "noscript",
    "template",
    "head",
    "title",
    "meta",
    "link",
})

# Installed before any bundle code runs. Intrinsics are captured up front
# and the two globals are non-writable, so the snapshot and the error list
# do not depend on anything the bundle redefines.
PAGE_RUNTIME_JS = r"""
(() => {
  const apply = Reflect.apply;
  const define = Object.defineProperty;
  const createDict = Object.create;
  const getter = (proto, name) => Object.getOwnPropertyDescriptor(proto, name).get;
  const push = Array.prototype.push;
  const slice = Array.prototype.slice;
  const replace = String.prototype.replace;
  const trim = String.prototype.trim;
  const split = String.prototype.split;
  const lower = String.prototype.toLowerCase;
  const toText = String;
  const attributesOf = getter(Element.prototype, 'attributes');
  const tagNameOf = getter(Element.prototype, 'tagName');
  const attrCountOf = getter(NamedNodeMap.prototype, 'length');
  const attrNameOf = getter(Attr.prototype, 'name');
  const attrValueOf = getter(Attr.prototype, 'value');
  const childNodesOf = getter(Node.prototype, 'childNodes');
  const nodeCountOf = getter(NodeList.prototype, 'length');
  const nodeTypeOf = getter(Node.prototype, 'nodeType');
  const textContentOf = getter(Node.prototype, 'textContent');
  const innerTextOf = getter(HTMLElement.prototype, 'innerText');
  const bodyOf = getter(Document.prototype, 'body');
  const rootOf = getter(Document.prototype, 'documentElement');
  const doc = document;
  const ELEMENT_NODE = 1;
  const TEXT_NODE = 3;
  const WHITESPACE = /\s+/g;
  const errors = [];

  const collapse = (value) => apply(trim, apply(replace, toText(value || ''), [WHITESPACE, ' ']), []);
  const tagOf = (el) => apply(lower, apply(tagNameOf, el, []), []);

  const report = (stage, error) => {
    let message;
    try {
      message = toText(error && error.stack || error);
    } catch (e) {
      message = 'unprintable error';
    }
    apply(push, errors, [{stage: toText(stage), message}]);
  };

  const walk = (el, skip, ignore) => {
    const attributes = {};
    const attrs = apply(attributesOf, el, []);
    const attrCount = apply(attrCountOf, attrs, []);
    for (let i = 0; i < attrCount; i++) {
      const name = apply(lower, apply(attrNameOf, attrs[i], []), []);
      if (!ignore[name]) {
        define(attributes, name, {
          value: apply(attrValueOf, attrs[i], []),
          enumerable: true, writable: true, configurable: true,
        });
      }
    }
    const children = [];
    const text_runs = [];
    const nodes = apply(childNodesOf, el, []);
    const count = apply(nodeCountOf, nodes, []);
    for (let i = 0; i < count; i++) {
      const node = nodes[i];
      const type = apply(nodeTypeOf, node, []);
      if (type === ELEMENT_NODE) {
        if (!skip[tagOf(node)]) apply(push, children, [walk(node, skip, ignore)]);
      } else if (type === TEXT_NODE) {
        const text = collapse(apply(textContentOf, node, []));
        if (text) apply(push, text_runs, [text]);
      }
    }
    return {tag: tagOf(el), attributes, children, text_runs};
  };

  const snapshot = (skipped, ignored) => {
    const skip = createDict(null);
    for (let i = 0; i < skipped.length; i++) skip[skipped[i]] = true;
    const ignore = createDict(null);
    for (let i = 0; i < ignored.length; i++) ignore[ignored[i]] = true;
    const root = apply(bodyOf, doc, []) || apply(rootOf, doc, []);
    const lines = apply(split, toText(apply(innerTextOf, root, []) || ''), ['\n']);
    const text = [];
    for (let i = 0; i < lines.length; i++) {
      const line = collapse(lines[i]);
      if (line) apply(push, text, [line]);
    }
    return {tree: walk(root, skip, ignore), text, errors: apply(slice, errors, [])};
  };

  define(window, '__reportRenderError', {value: report, writable: false, configurable: false});
  define(window, '__snapshotDom', {value: snapshot, writable: false, configurable: false});
})();
"""

_DOCUMENT_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<script>
{runtime}
</script>
<style>
* {{
  margin: 0;
  padding: 0;
  box-sizing: border-box;
}}
{css}
</style>
</head>
<body>
{html}
<script>
try {{
{js}
}} catch (error) {{
  window.__reportRenderError('script', error);
}}
</script>
</body>
</html>
"""

SERIALIZE_DOM_JS = """
({skipped, ignored}) => window.__snapshotDom(skipped, ignored)
"""


def build_document(bundle: CodeBundle) -> str:
    """Assemble the full HTML page for a bundle."""
    # A literal </script> inside the user's JS would close our wrapper early.
    js = bundle.js.replace("</script", "<\\/script")
    return _DOCUMENT_TEMPLATE.format(runtime=PAGE_RUNTIME_JS, css=bundle.css, html=bundle.html, js=js)


def collapse_whitespace(text: str) -> str:
    return " ".join(text.split())


def _attributes(tag: Tag) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for name, value in tag.attrs.items():
        name = name.lower()
        if name in INSTRUMENTATION_ATTRIBUTES:
            continue
        if isinstance(value, (list, tuple)):
            value = " ".join(value)
        attrs[name] = "" if value is None else str(value)
    return attrs


def _convert(tag: Tag) -> SerializedNode:
    children: list[SerializedNode] = []
    text_runs: list[str] = []
    for child in tag.children:
        if isinstance(child, Tag):
            if child.name.lower() == "html":
                # Stray nested <html> wrappers are flattened the way browsers do.
                nested = _convert(child)
                children.extend(nested.children)
                text_runs.extend(nested.text_runs)
            elif child.name.lower() not in SKIPPED_TAGS:
                children.append(_convert(child))
        elif isinstance(child, NavigableString) and not isinstance(child, PreformattedString):
            text = collapse_whitespace(str(child))
            if text:
                text_runs.append(text)
    return SerializedNode(
        tag=tag.name.lower() if tag.name else "body",
        attributes=_attributes(tag),
        children=children,
        text_runs=text_runs,
    )


def _root(soup: BeautifulSoup) -> Tag:
    body = soup.find("body")
    if body is not None:
        return body
    html = soup.find("html")
    if html is not None:
        return html
    return soup


def parse_dom(html: str) -> SerializedNode:
    """Parse-time DOM snapshot of a bundle's markup, rooted at ``body``."""
    soup = BeautifulSoup(html or "", "html.parser")
    root = _root(soup)
    node = _convert(root)
    if node.tag != "body":
        node = SerializedNode(tag="body", children=node.children, text_runs=node.text_runs)
    return node


def parse_text(html: str) -> list[str]:
    """Approximate the page's visible text lines without running scripts."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup.find_all(list(SKIPPED_TAGS)):
        tag.decompose()
    root = _root(soup)
    lines = (collapse_whitespace(line) for line in root.get_text("\n").split("\n"))
    return [line for line in lines if line]


def parse_artifact(
    bundle: CodeBundle,
    width: int,
    height: int,
    errors: list[RenderError] | None = None,
) -> RenderArtifact:
    """Artifact for a bundle whose render failed.

    Structure and text come from the raw markup; the screenshot is blank
    since nothing was painted.
    """
    return RenderArtifact(
        dom_tree=parse_dom(bundle.html),
        screenshot=PixelBuffer.blank(width, height),
        text_content=parse_text(bundle.html),
        render_errors=list(errors or []),
    )
