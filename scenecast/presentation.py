"""Turn extracted markup into a document the browser can show."""

import html
import re

VIEWPORT_META = '<meta name="viewport" content="width=device-width, initial-scale=1.0">'

BASE_STYLE = """\
html { box-sizing: border-box; font-size: 16px; }
*, *:before, *:after { box-sizing: inherit; }
body{font-family:sans-serif;margin:10px;background-color:#f0f0f0;color:#333;line-height:1.6;}
h1{color:#1a237e;text-align:center;margin-top:0;font-size:1.8em;}
img{max-width:100%;height:auto;border-radius:8px;margin:0 auto 15px;display:block;border:1px solid #ddd;}
button,a.action-link{background-color:#3949ab;color:#fff;padding:12px 18px;text-decoration:none;border-radius:5px;margin:5px;border:none;cursor:pointer;display:inline-block;font-size:1em}
button:hover,a.action-link:hover{background-color:#283593}
.further-thoughts{margin-top:25px;padding:15px;border-top:1px dashed #ccc;background-color:#e9e9e9;border-radius:5px;}
.further-thoughts label{display:block;margin-bottom:5px;}
"""

# Choices in a scene call performAction('...'). It posts the action, then
# waits for the turn to finish and swaps in the new document.
ACTION_SCRIPT = """\
<script>
function performAction(action) {
  fetch('/api/scene').then(function (r) { return r.json(); }).then(function (before) {
    return fetch('/api/action', {
      method: 'POST',
      headers: {'Content-Type': 'application/json'},
      body: JSON.stringify({action: action})
    }).then(function (res) {
      if (res.ok) { waitForScene(before.revision); }
    });
  });
}
function waitForScene(revision) {
  setTimeout(function () {
    fetch('/api/scene').then(function (r) { return r.json(); }).then(function (scene) {
      if (scene.busy || scene.revision === revision) { waitForScene(revision); return; }
      document.open(); document.write(scene.html); document.close();
    });
  }, 500);
}
</script>"""

_HEAD_OPEN = re.compile(r"<head(?:\s[^>]*)?>", re.IGNORECASE)
_HTML_OPEN = re.compile(r"<html[^>]*>", re.IGNORECASE)


def is_full_document(markup: str) -> bool:
    text = markup.strip().lower()
    return text.startswith("<html") and text.endswith("</html>")


def _inject_head(doc: str, snippet: str) -> str:
    head = _HEAD_OPEN.search(doc)
    if head:
        return doc[:head.end()] + snippet + doc[head.end():]
    opening = _HTML_OPEN.search(doc)
    return doc[:opening.end()] + f"<head>{snippet}</head>" + doc[opening.end():]


def wrap_document(markup: str) -> str:
    """Full documents get a viewport tag; fragments get the base page around them.

    Either way the page defines performAction for its choice buttons.
    """
    if is_full_document(markup):
        doc = markup.strip()
        extras = ""
        if 'name="viewport"' not in doc.lower():
            extras += VIEWPORT_META
        if "function performAction" not in doc:
            extras += ACTION_SCRIPT
        return _inject_head(doc, extras) if extras else doc
    return (
        f"<html><head>{VIEWPORT_META}<style>\n{BASE_STYLE}</style>{ACTION_SCRIPT}</head>\n"
        f"<body>\n{markup}\n</body>\n</html>"
    )


def notice(text: str) -> str:
    """Plain system notice shown in place of a scene."""
    return f"<p>System: {html.escape(text)}</p>"


def placeholder(title: str) -> str:
    return f"<html><body><h1>{html.escape(title)}</h1><p>Please wait.</p></body></html>"
