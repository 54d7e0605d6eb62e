import re
import time
import mimetypes
from pathlib import Path

from flask import Flask, jsonify, render_template_string, send_file, abort, request
from werkzeug.security import safe_join
import markdown

from host import App
from widget import DEFAULT_BULLET, ORDERED_FOLDER_NAMES, DynamicWidgetView

app = Flask(__name__)

BASE_DIR = Path.cwd()

import json as _json

_CONFIG_PATH = BASE_DIR / "dynamic_widget.config.json"
_DEFAULTS = {
    "port": 8000,
    "host": "127.0.0.1",
    "vault": ".",
    "excluded_dirs": [".obsidian", ".git", ".trash", "__pycache__", ".pytest_cache", ".venv", "venv", "node_modules"],
    "excluded_files": ["dynamic_widget.config.json"],
    "folder_order": list(ORDERED_FOLDER_NAMES),
    "open_in": "tab",
    "emoji_bullets": False,
    "default_bullet": DEFAULT_BULLET,
    "poll_interval": 5,
}

def _load_config(path: Path = _CONFIG_PATH) -> dict:
    cfg = dict(_DEFAULTS)
    if path.is_file():
        try:
            with open(path, encoding="utf-8") as f:
                user = _json.load(f)
            if not isinstance(user, dict):
                raise ValueError("top level must be an object")
            cfg.update(user)
        except (OSError, ValueError) as e:
            print(f"Warning: could not load {path.name}: {e}")
    return cfg

_base_cfg = _load_config()
_cfg = dict(_base_cfg)

PORT = _cfg["port"]
HOST = _cfg["host"]
VAULT = (BASE_DIR / Path(_cfg["vault"]).expanduser()).resolve()
POLL_INTERVAL = max(1, int(_cfg["poll_interval"]))

_app: App = None
_view: DynamicWidgetView = None
_sync_state: dict = {"ts": 0.0}


def configure(vault_path=None, **overrides) -> DynamicWidgetView:
    """Build the host and widget for a vault, replacing any previous ones."""
    global _cfg, VAULT, POLL_INTERVAL, _app, _view

    cfg = dict(_base_cfg)
    cfg.update(overrides)
    if vault_path is not None:
        VAULT = Path(vault_path).resolve()
    POLL_INTERVAL = max(1, int(cfg["poll_interval"]))
    _cfg = cfg

    if _view is not None:
        _view.on_close()
    _app = App(VAULT, cfg["excluded_dirs"], cfg["excluded_files"])
    _view = DynamicWidgetView(
        _app,
        folder_order=cfg["folder_order"],
        open_in=cfg["open_in"],
        emoji_bullets=bool(cfg["emoji_bullets"]),
        default_bullet=cfg["default_bullet"],
    )
    _view.on_open()
    _sync_state["ts"] = time.monotonic()
    return _view


def build_tree(documents) -> list:

    root: dict = {}
    for doc in documents:
        node = root
        parts = doc.path.split("/")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = doc

    def convert(node: dict, prefix: str) -> list:
        items = []
        for name, value in sorted(node.items(), key=lambda kv: (not isinstance(kv[1], dict), kv[0].lower())):
            path = f"{prefix}{name}"
            if isinstance(value, dict):
                items.append({"name": name, "path": path, "type": "folder",
                              "children": convert(value, path + "/")})
            else:
                items.append({"name": name, "path": path, "type": "file"})
        return items

    return convert(root, "")


def resolve_document(note_path: str):

    vault = _app.vault
    doc = vault.get_file(note_path) or vault.get_file(note_path + ".md")
    if doc is not None:
        return doc
    name = note_path.rsplit("/", 1)[-1]
    if "." not in name:
        name += ".md"
    for candidate in vault.get_files():
        if candidate.path.rsplit("/", 1)[-1] == name:
            return candidate
    return None


def process_wikilinks(text: str) -> str:

    def replace_embed(m):
        target = m.group(1)
        ext = Path(target).suffix.lower()
        if ext in (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp"):
            return f'![{target}](/raw/{target})'
        return f'[{target}](#note:{target})'

    def replace_link(m):
        target = m.group(1)
        display = m.group(2) if m.group(2) else target
        return f'[{display}](#note:{target})'

    text = re.sub(r'!\[\[([^\]|]+?)(?:\|[^\]]*?)?\]\]', replace_embed, text)
    text = re.sub(r'\[\[([^\]|]+?)(?:\|([^\]]*?))?\]\]', replace_link, text)
    return text


def strip_frontmatter(text: str) -> str:
    return re.sub(r'\A---\r?\n.*?\r?\n---\r?\n?', '', text, count=1, flags=re.DOTALL)


def render_markdown(text: str) -> str:
    text = process_wikilinks(strip_frontmatter(text))
    extensions = ["fenced_code", "tables", "toc", "sane_lists", "nl2br", "codehilite"]
    html = markdown.markdown(text, extensions=extensions)
    html = re.sub(
        r'<a href="(https?://[^"]+)"',
        r'<a href="\1" target="_blank" rel="noopener noreferrer"',
        html,
    )
    return html


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _widget_payload() -> dict:
    active = _app.workspace.get_active_file()
    return {
        "revision": _view.revision,
        "mode": _view.mode.value,
        "active": active.path if active else None,
        "title": _view.display_text(),
        "html": _view.render_html(),
        "tree": _view.tree.to_dict(),
    }


@app.route("/")
def index():
    return render_template_string(MAIN_TEMPLATE, title=_view.display_text())


@app.route("/api/config")
def api_config():
    return jsonify({
        "open_in": _cfg["open_in"],
        "emoji_bullets": bool(_cfg["emoji_bullets"]),
        "poll_interval": POLL_INTERVAL,
    })


@app.route("/api/tree")
def api_tree():
    with _app.lock:
        documents = _app.vault.get_files()
    return jsonify(build_tree(documents))


@app.route("/api/check")
def api_check():
    now = time.monotonic()
    with _app.lock:
        if now - _sync_state["ts"] >= POLL_INTERVAL:
            _sync_state["ts"] = now
            _app.vault.sync()
        active = _app.workspace.get_active_file()
        return jsonify({
            "revision": _view.revision,
            "active": active.path if active else None,
            "tabs": [doc.path for doc in _app.workspace.tabs],
            "tree_version": _app.vault.version,
            "note_mtime": active.mtime if active else None,
        })


@app.route("/api/widget")
def api_widget():
    with _app.lock:
        return jsonify(_widget_payload())


@app.route("/api/widget/activate", methods=["POST"])
def api_widget_activate():
    path = _json_body().get("path", "")
    if not isinstance(path, str) or not _view.activate(path):
        return jsonify({"ok": False, "error": "Not a link in the widget"}), 404
    with _app.lock:
        return jsonify({"ok": True, **_widget_payload()})


@app.route("/api/open", methods=["POST"])
def api_open():
    body = _json_body()
    path = body.get("path", "")
    if not isinstance(path, str) or not path:
        return jsonify({"ok": False, "error": "Path is required"}), 400
    with _app.lock:
        doc = resolve_document(path)
        if doc is None:
            return jsonify({"ok": False, "error": "Document not found"}), 404
        _app.workspace.open_file(doc, new_tab=bool(body.get("new_tab", False)))
        return jsonify({"ok": True, "path": doc.path})


@app.route("/api/close", methods=["POST"])
def api_close():
    with _app.lock:
        _app.workspace.close_active()
        active = _app.workspace.get_active_file()
        return jsonify({"ok": True, "active": active.path if active else None})


@app.route("/api/files/rename", methods=["POST"])
def api_files_rename():
    body = _json_body()
    raw_path = body.get("path", "")
    new_path = body.get("new_path", "")
    if not isinstance(raw_path, str) or not isinstance(new_path, str) or not new_path.strip():
        return jsonify({"ok": False, "error": "Path and new_path are required"}), 400
    new_path = new_path.strip().replace("\\", "/").strip("/")
    if safe_join(str(VAULT), new_path) is None:
        return jsonify({"ok": False, "error": "Invalid path"}), 400
    with _app.lock:
        doc = _app.vault.get_file(raw_path)
        if doc is None:
            return jsonify({"ok": False, "error": "Document not found"}), 404
        try:
            doc = _app.vault.rename(doc, new_path)
        except FileExistsError:
            return jsonify({"ok": False, "error": "File already exists"}), 409
        except ValueError as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        return jsonify({"ok": True, "path": doc.path})


@app.route("/api/note/<path:note_path>")
def api_note(note_path):
    with _app.lock:
        doc = resolve_document(note_path)
        active = _app.workspace.get_active_file()
    if doc is None or doc.extension != "md":
        abort(404)
    fpath = _app.vault.resolve(doc.path)
    if fpath is None or not fpath.is_file():
        abort(404)
    html = render_markdown(fpath.read_text(encoding="utf-8", errors="replace"))
    return jsonify({"html": html, "path": doc.path, "name": doc.basename,
                    "mtime": doc.mtime, "active": active is not None and active.path == doc.path})


@app.route("/raw/<path:file_path>")
def raw_file(file_path):
    fpath = _app.vault.resolve(file_path)
    if fpath is None or not fpath.is_file():
        abort(404)
    mime, _ = mimetypes.guess_type(str(fpath))
    return send_file(fpath, mimetype=mime)


MAIN_TEMPLATE = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{{ title }}</title>
<style>

*, *::before, *::after { box-sizing: border-box; margin: 0; padding: 0; }

:root {
  --bg-primary: #1a1a2e;
  --bg-secondary: #16162a;
  --bg-tertiary: #1f1f3a;
  --bg-hover: rgba(134,112,255,.08);
  --bg-active: rgba(134,112,255,.15);
  --text: #e0def4;
  --text-muted: #908caa;
  --text-faint: #6e6a86;
  --accent: #8673ff;
  --accent-hover: #a48fff;
  --border: rgba(255,255,255,.06);
  --border-strong: rgba(255,255,255,.1);
  --sidebar-width: 260px;
  --widget-width: 300px;
  --topbar-height: 38px;
  --font: -apple-system, BlinkMacSystemFont, 'Segoe UI', 'Inter', Roboto, Oxygen, Ubuntu, sans-serif;
  --font-mono: 'Fira Code', 'JetBrains Mono', 'Source Code Pro', 'Consolas', monospace;
  --radius: 4px;
}

html, body { height: 100%; background: var(--bg-primary); color: var(--text); font-family: var(--font); font-size: 16px; line-height: 1.6; }

.app { display: flex; height: 100vh; overflow: hidden; }

.sidebar, .widget-pane {
  background: var(--bg-secondary);
  display: flex;
  flex-direction: column;
  overflow: hidden;
}
.sidebar { width: var(--sidebar-width); min-width: 180px; }
.widget-pane { width: var(--widget-width); min-width: 200px; border-left: 1px solid var(--border); }

.sidebar-header {
  padding: 10px 14px;
  font-size: 12px;
  font-weight: 700;
  color: var(--text-faint);
  text-transform: uppercase;
  letter-spacing: .08em;
  border-bottom: 1px solid var(--border);
}

.file-tree, .widget-body { flex: 1; overflow-y: auto; padding: 4px 0; }

.tree-item {
  padding: 2px 10px 2px calc(var(--depth, 0) * 16px + 10px);
  cursor: pointer;
  font-size: 13px;
  color: var(--text-muted);
  border-radius: var(--radius);
  margin: 1px 6px;
  white-space: nowrap;
  text-overflow: ellipsis;
  overflow: hidden;
  user-select: none;
}
.tree-item:hover { background: var(--bg-hover); color: var(--text); }
.tree-item.active { background: var(--bg-active); color: var(--accent-hover); }
.tree-item.folder { color: var(--text-faint); }

.main { flex: 1; display: flex; flex-direction: column; min-width: 0; }

.topbar {
  height: var(--topbar-height);
  min-height: var(--topbar-height);
  background: var(--bg-secondary);
  border-bottom: 1px solid var(--border);
  display: flex;
  align-items: center;
  padding: 0 12px;
  gap: 6px;
  overflow-x: auto;
}
.tab {
  font-size: 12px;
  color: var(--text-faint);
  padding: 3px 10px;
  border-radius: var(--radius);
  white-space: nowrap;
}
.tab.active { background: var(--bg-active); color: var(--text); }
.topbar-btn {
  margin-left: auto;
  background: none;
  border: 1px solid var(--border-strong);
  border-radius: var(--radius);
  color: var(--text-muted);
  cursor: pointer;
  font-size: 12px;
  padding: 3px 10px;
}

.content-area { flex: 1; overflow-y: auto; padding: 48px 56px; }
.welcome { color: var(--text-faint); text-align: center; margin-top: 20vh; }

.markdown-body { max-width: 750px; margin: 0 auto; color: var(--text); }
.markdown-body h1 { font-size: 1.9em; font-weight: 700; margin: 0 0 20px; padding-bottom: 10px; border-bottom: 1px solid var(--border); }
.markdown-body h2 { font-size: 1.45em; font-weight: 600; margin: 32px 0 12px; }
.markdown-body h3 { font-size: 1.2em; font-weight: 600; margin: 24px 0 8px; }
.markdown-body p { margin: 0 0 14px; }
.markdown-body a { color: var(--accent); text-decoration: none; }
.markdown-body a:hover { color: var(--accent-hover); text-decoration: underline; }
.markdown-body ul, .markdown-body ol { margin: 0 0 14px 24px; }
.markdown-body code { font-family: var(--font-mono); font-size: .88em; background: var(--bg-tertiary); padding: 2px 6px; border-radius: 3px; }
.markdown-body pre { background: var(--bg-tertiary); padding: 14px 18px; border-radius: var(--radius); overflow-x: auto; margin: 0 0 16px; }
.markdown-body pre code { background: none; padding: 0; }

.dynamic-widget-content { padding: 8px 14px; font-size: 13px; }
.dynamic-widget-content h2 { font-size: 1.2em; font-weight: 600; margin: 4px 0 10px; }
.dynamic-widget-content h4 { font-size: .85em; font-weight: 600; color: var(--text-muted); margin: 14px 0 4px; }
.dynamic-widget-content ol { margin: 0 0 0 20px; }
.dynamic-widget-content ol:has(.dynamic-widget-bullet) { list-style: none; margin-left: 4px; }
.dynamic-widget-bullet { margin-right: 6px; }
.dynamic-widget-link { color: var(--accent); text-decoration: none; cursor: pointer; }
.dynamic-widget-link:hover { color: var(--accent-hover); text-decoration: underline; }
.dynamic-widget-active-file { color: var(--text); font-weight: 600; background: var(--bg-active); padding: 0 4px; border-radius: 3px; }
.dynamic-widget-no-file, .dynamic-widget-other { color: var(--text-faint); }
</style>
</head>
<body>
<div class="app">
  <nav class="sidebar">
    <div class="sidebar-header">Vault <span id="fileCount" style="font-weight:400;opacity:.5"></span></div>
    <div class="file-tree" id="fileTree"></div>
  </nav>
  <div class="main">
    <div class="topbar" id="topbar"></div>
    <div class="content-area" id="contentArea">
      <div class="welcome"><p>Select a note from the sidebar</p></div>
    </div>
  </div>
  <aside class="widget-pane">
    <div class="sidebar-header">{{ title }}</div>
    <div class="widget-body" id="widgetBody"></div>
  </aside>
</div>

<script>
const $ = s => document.querySelector(s);
const fileTree = $('#fileTree');
const contentArea = $('#contentArea');
const topbar = $('#topbar');
const widgetBody = $('#widgetBody');
let lastRevision = null;
let lastTreeVersion = null;
let currentNotePath = null;
let currentNoteMtime = null;
let pollPaused = false;

function esc(s) {
  const d = document.createElement('div');
  d.textContent = s;
  return d.innerHTML;
}

function encodeURIPath(p) {
  return p.split('/').map(encodeURIComponent).join('/');
}

async function postJson(url, body) {
  const res = await fetch(url, {method: 'POST', headers: {'Content-Type': 'application/json'}, body: JSON.stringify(body)});
  return res.json();
}

function renderTree(items, container, depth = 0) {
  items.forEach(item => {
    const row = document.createElement('div');
    row.className = 'tree-item' + (item.type === 'folder' ? ' folder' : '');
    row.style.setProperty('--depth', depth);
    row.textContent = item.name.endsWith('.md') ? item.name.slice(0, -3) : item.name;
    container.appendChild(row);
    if (item.type === 'folder') {
      renderTree(item.children, container, depth + 1);
      return;
    }
    row.dataset.path = item.path;
    row.addEventListener('click', e => {
      if (item.name.endsWith('.md')) {
        openNote(item.path, e.ctrlKey || e.metaKey);
      } else {
        window.open('/raw/' + encodeURIPath(item.path), '_blank');
      }
    });
  });
}

function countFiles(items) {
  let n = 0;
  items.forEach(item => {
    if (item.type === 'file') n++;
    else if (item.children) n += countFiles(item.children);
  });
  return n;
}

async function reloadTree() {
  const res = await fetch('/api/tree');
  const tree = await res.json();
  fileTree.innerHTML = '';
  renderTree(tree, fileTree);
  $('#fileCount').textContent = countFiles(tree);
  markActive();
}

function markActive() {
  fileTree.querySelectorAll('.tree-item[data-path]').forEach(el => {
    el.classList.toggle('active', el.dataset.path === currentNotePath);
  });
}

function renderTabs(tabs, active) {
  topbar.innerHTML = tabs.map(p =>
    `<span class="tab${p === active ? ' active' : ''}">${esc(p.split('/').pop().replace(/\.md$/i, ''))}</span>`
  ).join('') + (active ? '<button class="topbar-btn" id="closeTabBtn">Close</button>' : '');
  const btn = $('#closeTabBtn');
  if (btn) btn.addEventListener('click', async () => { await postJson('/api/close', {}); refresh(); });
}

async function loadNote(path) {
  currentNotePath = path;
  currentNoteMtime = null;
  markActive();
  if (!path) {
    contentArea.innerHTML = '<div class="welcome"><p>Select a note from the sidebar</p></div>';
    return;
  }
  try {
    const res = await fetch('/api/note/' + encodeURIPath(path));
    if (!res.ok) throw new Error('Not found');
    const data = await res.json();
    currentNoteMtime = data.mtime;
    const hasH1 = data.html.trimStart().startsWith('<h1');
    const titleHtml = hasH1 ? '' : '<h1>' + esc(data.name) + '</h1>';
    contentArea.innerHTML = '<div class="markdown-body">' + titleHtml + data.html + '</div>';
    contentArea.querySelectorAll('a[href^="#note:"]').forEach(a => {
      a.addEventListener('click', e => {
        e.preventDefault();
        openNote(decodeURIComponent(a.getAttribute('href').slice(6)), e.ctrlKey || e.metaKey);
      });
    });
  } catch (e) {
    contentArea.innerHTML = '<div class="welcome"><p>Could not load note: ' + esc(path) + '</p></div>';
  }
}

async function loadWidget() {
  const res = await fetch('/api/widget');
  const data = await res.json();
  lastRevision = data.revision;
  widgetBody.innerHTML = data.html;
  widgetBody.querySelectorAll('a.dynamic-widget-link').forEach(a => {
    a.addEventListener('click', async e => {
      e.preventDefault();
      const result = await postJson('/api/widget/activate', {path: a.dataset.path});
      if (result.ok) refresh();
    });
  });
  return data;
}

async function refresh() {
  const res = await fetch('/api/check');
  const state = await res.json();
  renderTabs(state.tabs, state.active);
  await loadWidget();
  if (state.active !== currentNotePath || (state.active && state.note_mtime !== currentNoteMtime)) {
    await loadNote(state.active);
  }
}

async function openNote(path, newTab) {
  const result = await postJson('/api/open', {path, new_tab: !!newTab});
  if (result.ok) refresh();
}

async function pollCheck() {
  try {
    const res = await fetch('/api/check');
    const data = await res.json();
    if (lastTreeVersion !== null && data.tree_version !== lastTreeVersion) {
      await reloadTree();
    }
    lastTreeVersion = data.tree_version;
    if (lastRevision !== null && data.revision !== lastRevision) {
      await refresh();
    } else if (data.active && data.active === currentNotePath && currentNoteMtime !== null && data.note_mtime !== currentNoteMtime) {
      await loadNote(data.active);
    }
  } catch (e) {  }
}

document.addEventListener('visibilitychange', () => {
  pollPaused = document.hidden;
  if (!document.hidden) pollCheck();
});

(async () => {
  const cfg = await (await fetch('/api/config')).json();
  await reloadTree();
  await refresh();
  setInterval(() => {
    if (!pollPaused) pollCheck();
  }, cfg.poll_interval * 1000);
})();
</script>
</body>
</html>
"""


configure()


if __name__ == "__main__":
    import socket
    hostname = socket.gethostname()
    local_ip = socket.gethostbyname(hostname)
    print(f"Serving vault: {VAULT}")
    print(f"Open http://localhost:{PORT}    (this machine)")
    print(f"     http://{local_ip}:{PORT}  (other devices on network)")
    app.run(host=HOST, port=PORT)
