import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml


_FRONTMATTER_RE = re.compile(r"\A---\r?\n(.*?)\r?\n---\r?\n?", re.DOTALL)
_WIKILINK_RE = re.compile(r'!?\[\[([^\]|#]+?)(?:#[^\]|]*)?(?:\|[^\]]*?)?\]\]')
_HEADING_RE = re.compile(r'^(#{1,6})\s+(.+?)\s*#*\s*$', re.MULTILINE)
_TAG_RE = re.compile(r'(?<![\w/#])#([A-Za-z_][\w/-]*)')
_FENCE_RE = re.compile(r'^(```|~~~).*?^\1', re.MULTILINE | re.DOTALL)


@dataclass
class Document:
    path: str
    basename: str
    extension: str
    ctime: float
    mtime: float

    @property
    def parent(self) -> str:
        return self.path.rsplit("/", 1)[0] if "/" in self.path else ""


@dataclass
class CachedMetadata:
    frontmatter: dict = field(default_factory=dict)
    tags: list = field(default_factory=list)
    headings: list = field(default_factory=list)
    links: list = field(default_factory=list)


@dataclass
class EventRef:
    name: str
    callback: object


class Events:
    """Synchronous named-event registry; callbacks run on the triggering thread."""

    def __init__(self):
        self._handlers: dict[str, list[EventRef]] = {}

    def on(self, name: str, callback) -> EventRef:
        ref = EventRef(name, callback)
        self._handlers.setdefault(name, []).append(ref)
        return ref

    def off(self, ref: EventRef):
        handlers = self._handlers.get(ref.name, [])
        if ref in handlers:
            handlers.remove(ref)

    def trigger(self, name: str, *args):
        for ref in list(self._handlers.get(name, [])):
            ref.callback(*args)


def _stat_document(root: Path, rel: str) -> Document:
    st = (root / rel).stat()
    name = rel.rsplit("/", 1)[-1]
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    return Document(
        path=rel,
        basename=stem,
        extension=ext.lower(),
        ctime=getattr(st, "st_birthtime", st.st_ctime),
        mtime=st.st_mtime,
    )


class Vault(Events):

    def __init__(self, root, excluded_dirs=(), excluded_files=()):
        super().__init__()
        self.root = Path(root).resolve()
        self.excluded_dirs = set(excluded_dirs)
        self.excluded_files = set(excluded_files)
        self._files: dict[str, Document] = {}
        self.version = 0
        for rel in self._walk():
            try:
                self._files[rel] = _stat_document(self.root, rel)
            except OSError:
                pass
        print(f"[vault] Indexed {len(self._files)} files from {self.root}")

    def _walk(self):

        stack = [self.root]
        while stack:
            d = stack.pop()
            try:
                entries = sorted(os.scandir(d), key=lambda e: e.name)
            except OSError:
                continue
            for entry in entries:
                if entry.is_dir(follow_symlinks=False):
                    if entry.name not in self.excluded_dirs:
                        stack.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=False) and entry.name not in self.excluded_files:
                    yield Path(entry.path).relative_to(self.root).as_posix()

    def get_files(self) -> list[Document]:
        return sorted(self._files.values(), key=lambda d: d.path)

    def get_markdown_files(self) -> list[Document]:
        return [d for d in self.get_files() if d.extension == "md"]

    def get_file(self, path: str) -> Document | None:
        return self._files.get(path)

    def resolve(self, rel: str) -> Path | None:

        if not rel:
            return None
        try:
            candidate = (self.root / rel).resolve()
            candidate_rel = candidate.relative_to(self.root)
        except (ValueError, OSError):
            return None
        if any(part in self.excluded_dirs for part in candidate_rel.parts):
            return None
        if candidate.name in self.excluded_files:
            return None
        return candidate

    def sync(self) -> list[tuple[str, str]]:
        """Rescan the vault directory and emit create/modify/delete for differences."""
        seen = {}
        for rel in self._walk():
            try:
                seen[rel] = _stat_document(self.root, rel)
            except OSError:
                continue

        changes = []
        for rel, doc in seen.items():
            old = self._files.get(rel)
            if old is None:
                self._files[rel] = doc
                changes.append(("create", rel))
            elif old.mtime != doc.mtime:
                old.mtime = doc.mtime
                old.ctime = doc.ctime
                changes.append(("modify", rel))
        for rel in [r for r in self._files if r not in seen]:
            changes.append(("delete", rel))

        for kind, rel in changes:
            if kind == "delete":
                doc = self._files.pop(rel)
            else:
                doc = self._files[rel]
            self.trigger(kind, doc)
        if changes:
            self.version += 1
            print(f"[vault] Synced {len(changes)} change(s)")
        return changes

    def rename(self, doc: Document, new_path: str) -> Document:
        target = self.resolve(new_path)
        if target is None:
            raise ValueError(f"Invalid path: {new_path}")
        if target.exists():
            raise FileExistsError(new_path)
        source = self.root / doc.path
        target.parent.mkdir(parents=True, exist_ok=True)
        source.rename(target)

        old_path = doc.path
        new_rel = target.relative_to(self.root).as_posix()
        fresh = _stat_document(self.root, new_rel)
        del self._files[old_path]
        doc.path = fresh.path
        doc.basename = fresh.basename
        doc.extension = fresh.extension
        doc.mtime = fresh.mtime
        self._files[new_rel] = doc
        self.version += 1
        print(f"[vault] Renamed {old_path} -> {new_rel}")
        self.trigger("rename", doc, old_path)
        return doc


def _normalize_tags(value) -> list:
    if isinstance(value, str):
        value = re.split(r"[,\s]+", value)
    if not isinstance(value, list):
        return []
    return [str(t).lstrip("#") for t in value if isinstance(t, str) and t.strip("# ")]


def parse_metadata(text: str) -> CachedMetadata:

    frontmatter = {}
    body = text
    m = _FRONTMATTER_RE.match(text)
    if m:
        try:
            loaded = yaml.safe_load(m.group(1))
        except yaml.YAMLError as e:
            print(f"[metadata] Ignoring malformed frontmatter: {e}")
            loaded = None
        if isinstance(loaded, dict):
            frontmatter = loaded
        body = text[m.end():]

    prose = _FENCE_RE.sub("", body)
    tags = _normalize_tags(frontmatter.get("tags"))
    for tag in _TAG_RE.findall(prose):
        if tag not in tags:
            tags.append(tag)
    headings = [(len(h), t) for h, t in _HEADING_RE.findall(prose)]
    links = [target.strip() for target in _WIKILINK_RE.findall(prose)]
    return CachedMetadata(frontmatter=frontmatter, tags=tags, headings=headings, links=links)


class MetadataCache(Events):

    def __init__(self, vault: Vault):
        super().__init__()
        self.vault = vault
        self._cache: dict[str, CachedMetadata] = {}
        for doc in vault.get_markdown_files():
            self._load(doc)
        vault.on("create", self._on_change)
        vault.on("modify", self._on_change)
        vault.on("rename", self._on_rename)
        vault.on("delete", self._on_delete)

    def _load(self, doc: Document) -> CachedMetadata | None:
        if doc.extension != "md":
            return None
        try:
            text = (self.vault.root / doc.path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            self._cache.pop(doc.path, None)
            return None
        meta = parse_metadata(text)
        self._cache[doc.path] = meta
        return meta

    def get_file_cache(self, doc: Document | None) -> CachedMetadata | None:
        if doc is None:
            return None
        return self._cache.get(doc.path)

    def _on_change(self, doc: Document):
        if self._load(doc) is not None:
            self.trigger("changed", doc)

    def _on_rename(self, doc: Document, old_path: str):
        meta = self._cache.pop(old_path, None)
        if meta is not None:
            self._cache[doc.path] = meta

    def _on_delete(self, doc: Document):
        self._cache.pop(doc.path, None)


class Workspace(Events):

    def __init__(self, vault: Vault):
        super().__init__()
        self.vault = vault
        self.tabs: list[Document] = []
        self.active_index = -1
        vault.on("delete", self._on_delete)

    def get_active_file(self) -> Document | None:
        if 0 <= self.active_index < len(self.tabs):
            return self.tabs[self.active_index]
        return None

    def open_file(self, doc: Document, new_tab: bool = False):
        # a document lives in at most one tab; reopening it focuses that tab
        if doc in self.tabs:
            self.active_index = self.tabs.index(doc)
        elif new_tab or not self.tabs:
            self.tabs.append(doc)
            self.active_index = len(self.tabs) - 1
        else:
            self.tabs[self.active_index] = doc
        self.trigger("active-leaf-change", doc)

    def close_active(self):
        if self.get_active_file() is None:
            return
        self.tabs.pop(self.active_index)
        self.active_index = min(self.active_index, len(self.tabs) - 1)
        self.trigger("active-leaf-change", self.get_active_file())

    def _on_delete(self, doc: Document):
        if doc not in self.tabs:
            return
        was_active = doc == self.get_active_file()
        shift = sum(1 for d in self.tabs[:self.active_index + 1] if d == doc)
        self.tabs = [d for d in self.tabs if d != doc]
        self.active_index = max(self.active_index - shift, 0 if self.tabs else -1)
        if was_active:
            self.trigger("active-leaf-change", self.get_active_file())


class App:

    def __init__(self, vault_root, excluded_dirs=(), excluded_files=()):
        self.lock = threading.RLock()
        self.vault = Vault(vault_root, excluded_dirs, excluded_files)
        self.metadata_cache = MetadataCache(self.vault)
        self.workspace = Workspace(self.vault)
