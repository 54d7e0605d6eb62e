import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from markupsafe import escape

from host import App, Document


VIEW_TYPE_DYNAMIC_WIDGET = "dynamic-widget-view"

ORDERED_FOLDER_NAMES = (
    "Inbox 📥",
    "Goals 🎯",
    "Growth Edges 🌱",
    "Projects 🏔️/Active ✅",
    "Projects 🏔️/Upcoming ⏳",
    "Projects 🏔️/Ideas 💡",
    "Projects 🏔️/Backlog 🗄️",
    "Projects 🏔️/Incubating 🌱",
    "Relationships 👥",
    "Resources 🛠️",
    "Archives 📦",
)

NO_ACTIVE_FILE_TEXT = "No file is currently active"
OTHER_TEXT = "Other"
DEFAULT_BULLET = "•"

_DATE_NAME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_WIKILINK_BRACKETS_RE = re.compile(r"\[\[|\]\]")
# BMP symbols drawn as emoji without a variation selector
_EMOJI_PRESENTATION = (
    "\u231a\u231b\u23e9-\u23ec\u23f0\u23f3\u25fd\u25fe\u2614\u2615\u2648-\u2653"
    "\u267f\u2693\u26a1\u26aa\u26ab\u26bd\u26be\u26c4\u26c5\u26ce\u26d4\u26ea"
    "\u26f2\u26f3\u26f5\u26fa\u26fd\u2705\u270a\u270b\u2728\u274c\u274e"
    "\u2753-\u2755\u2757\u2795-\u2797\u27b0\u27bf\u2b1b\u2b1c\u2b50\u2b55"
)
_EMOJI_CHAR = (
    f"(?:[\U0001f000-\U0001faff{_EMOJI_PRESENTATION}]\ufe0f?"
    "|[\u00a9\u00ae\u2000-\u2bff]\ufe0f)"
)
_EMOJI_RE = re.compile(f"{_EMOJI_CHAR}(?:\u200d{_EMOJI_CHAR})*")


class DisplayMode(Enum):
    AREA = "area"
    AREAS = "areas"
    DAY = "day"
    OTHER = "other"


class ViewState(Enum):
    IDLE = "idle"
    RENDERING = "rendering"


@dataclass
class Group:
    bucket: str
    documents: list


@dataclass
class Node:
    tag: str
    text: str = ""
    cls: str | None = None
    attrs: dict = field(default_factory=dict)
    children: list = field(default_factory=list)

    def create_el(self, tag: str, text: str = "", cls: str | None = None, attrs: dict | None = None) -> "Node":
        child = Node(tag, text=text, cls=cls, attrs=dict(attrs or {}))
        self.children.append(child)
        return child

    def append(self, child: "Node") -> "Node":
        self.children.append(child)
        return child

    def find_all(self, tag: str | None = None, cls: str | None = None) -> list:
        found = []
        for child in self.children:
            if (tag is None or child.tag == tag) and (cls is None or child.cls == cls):
                found.append(child)
            found.extend(child.find_all(tag, cls))
        return found

    def is_empty(self) -> bool:
        return not self.text and not self.children

    def to_html(self) -> str:
        attrs = ""
        if self.cls:
            attrs += f' class="{escape(self.cls)}"'
        for key, value in self.attrs.items():
            attrs += f' {key}="{escape(value)}"'
        inner = str(escape(self.text)) + "".join(c.to_html() for c in self.children)
        return f"<{self.tag}{attrs}>{inner}</{self.tag}>"

    def to_dict(self) -> dict:
        out = {"tag": self.tag}
        if self.text:
            out["text"] = self.text
        if self.cls:
            out["cls"] = self.cls
        if self.attrs:
            out["attrs"] = dict(self.attrs)
        if self.children:
            out["children"] = [c.to_dict() for c in self.children]
        return out


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def strip_wikilink(value: str) -> str:
    return _WIKILINK_BRACKETS_RE.sub("", value).strip()


def _flatten_strings(value):
    for item in value:
        if isinstance(item, str):
            yield item
        elif isinstance(item, list):
            yield from _flatten_strings(item)


def normalize_areas(value) -> list[str]:
    """Coerce an area/areas frontmatter value into a list of bare area names.

    A single string becomes a one-element list. Nested lists, which is what
    YAML makes of an unquoted ``[[Area]]``, are flattened. Values of any other
    type contribute nothing.
    """
    if isinstance(value, str):
        items = [value]
    elif isinstance(value, list):
        items = list(_flatten_strings(value))
    else:
        return []
    areas = []
    for item in items:
        name = strip_wikilink(item)
        if name and name not in areas:
            areas.append(name)
    return areas


def _frontmatter(doc: Document | None, cache) -> dict:
    meta = cache.get_file_cache(doc)
    if meta is None:
        return {}
    return meta.frontmatter


def parse_day(basename: str) -> date | None:
    if not _DATE_NAME_RE.match(basename):
        return None
    try:
        return date.fromisoformat(basename)
    except ValueError:
        return None


def classify(active: Document | None, cache) -> DisplayMode:
    if active is None:
        return DisplayMode.OTHER
    fm = _frontmatter(active, cache)
    if normalize_areas(fm.get("areas")):
        return DisplayMode.AREAS
    if normalize_areas(fm.get("area")):
        return DisplayMode.AREA
    if parse_day(active.basename) is not None:
        return DisplayMode.DAY
    return DisplayMode.OTHER


def active_areas(active: Document | None, cache, mode: DisplayMode) -> list[str]:
    if mode is DisplayMode.AREAS:
        return normalize_areas(_frontmatter(active, cache).get("areas"))
    if mode is DisplayMode.AREA:
        return normalize_areas(_frontmatter(active, cache).get("area"))
    return []


def format_day(day: date) -> str:
    return f"{day:%a}, {day:%b} {day.day}, {day.year}"


def header_text(mode: DisplayMode, active: Document | None, areas: list[str]) -> str:
    if areas:
        return ", ".join(areas)
    if active is None:
        return "Dynamic Widget"
    if mode is DisplayMode.DAY:
        return format_day(parse_day(active.basename))
    return active.basename


# ---------------------------------------------------------------------------
# Selection and grouping
# ---------------------------------------------------------------------------


def document_areas(doc: Document, cache) -> list[str]:
    fm = _frontmatter(doc, cache)
    areas = normalize_areas(fm.get("areas"))
    for name in normalize_areas(fm.get("area")):
        if name not in areas:
            areas.append(name)
    return areas


def find_by_area(documents, cache, area: str) -> list[Document]:
    target = strip_wikilink(area)
    return [doc for doc in documents if target in document_areas(doc, cache)]


def find_by_areas(documents, cache, areas) -> list[Document]:
    documents = list(documents)
    seen = set()
    found = []
    for area in areas:
        for doc in find_by_area(documents, cache, area):
            if doc.path not in seen:
                seen.add(doc.path)
                found.append(doc)
    return found


def find_by_day(documents, day: date, which: str = "created") -> list[Document]:
    if which == "created":
        attr = "ctime"
    elif which == "modified":
        attr = "mtime"
    else:
        raise ValueError(f"which must be 'created' or 'modified', not {which!r}")
    matches = [
        doc for doc in documents
        if doc.extension == "md" and datetime.fromtimestamp(getattr(doc, attr)).date() == day
    ]
    matches.sort(key=lambda doc: getattr(doc, attr), reverse=True)
    return matches


def group_by_buckets(documents, buckets) -> list[Group]:
    """Partition notes into buckets by literal path prefix, in bucket order.

    Every bucket appears in the result, empty or not. A note lands in the
    first bucket whose prefix it starts with; notes matching none are dropped.
    """
    notes = [doc for doc in documents if doc.extension == "md"]
    assigned = set()
    groups = []
    for bucket in buckets:
        files = [doc for doc in notes if doc.path.startswith(bucket) and doc.path not in assigned]
        assigned.update(doc.path for doc in files)
        groups.append(Group(bucket=bucket, documents=files))
    return groups


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def first_emoji(text: str) -> str | None:
    m = _EMOJI_RE.search(text or "")
    return m.group(0) if m else None


def bullet_for(doc: Document, bucket: str | None, default: str = DEFAULT_BULLET) -> str:
    """Pick the bullet for a listed document.

    The bucket name wins: its last segment first, so ``Projects 🏔️/Active ✅``
    gives ✅, then anywhere in the name. Folders are only consulted when the
    bucket carries no emoji: the document's parent, then its top-level folder.
    """
    candidates = []
    if bucket:
        candidates.append(bucket.rstrip("/").rsplit("/", 1)[-1])
        candidates.append(bucket)
    if doc.parent:
        candidates.append(doc.parent.rsplit("/", 1)[-1])
        candidates.append(doc.parent.split("/", 1)[0])
    for name in candidates:
        emoji = first_emoji(name)
        if emoji:
            return emoji
    return default


def entry_title(doc: Document, cache) -> str:
    title = _frontmatter(doc, cache).get("title")
    if isinstance(title, str) and title.strip():
        return title.strip()
    return doc.basename


class DynamicWidgetView:

    def __init__(self, app: App, folder_order=ORDERED_FOLDER_NAMES, open_in="tab",
                 emoji_bullets=False, default_bullet=DEFAULT_BULLET):
        if open_in not in ("tab", "current"):
            raise ValueError(f"open_in must be 'tab' or 'current', not {open_in!r}")
        self.app = app
        self.folder_order = list(folder_order)
        self.open_in = open_in
        self.emoji_bullets = emoji_bullets
        self.default_bullet = default_bullet
        self.tree = Node("div", cls="dynamic-widget-content")
        self.mode = DisplayMode.OTHER
        self.revision = 0
        self.state = ViewState.IDLE
        self._pending = False
        self._refs = []
        self._links: dict[str, Document] = {}
        self._shown: set[str] = set()

    def view_type(self) -> str:
        return VIEW_TYPE_DYNAMIC_WIDGET

    def display_text(self) -> str:
        return "Dynamic Widget"

    def icon(self) -> str:
        return "activity"

    def register_event(self, emitter, name: str, callback):
        self._refs.append((emitter, emitter.on(name, callback)))

    def on_open(self):
        self.register_event(self.app.workspace, "active-leaf-change", self._on_active_leaf_change)
        self.register_event(self.app.metadata_cache, "changed", self._on_metadata_changed)
        self.register_event(self.app.vault, "rename", self._on_rename)
        self.register_event(self.app.vault, "delete", self._on_delete)
        self.update_content()

    def on_close(self):
        for emitter, ref in self._refs:
            emitter.off(ref)
        self._refs = []
        self._links = {}
        self._shown = set()
        self.tree = Node("div", cls="dynamic-widget-content")

    def render_html(self) -> str:
        return self.tree.to_html()

    # -- host events --------------------------------------------------------

    def _context(self):
        active = self.app.workspace.get_active_file()
        mode = classify(active, self.app.metadata_cache)
        return active, mode, active_areas(active, self.app.metadata_cache, mode)

    def _shares_area(self, doc: Document, areas) -> bool:
        return bool(set(document_areas(doc, self.app.metadata_cache)) & set(areas))

    def _on_active_leaf_change(self, *args):
        self.update_content()

    def _on_metadata_changed(self, doc: Document):
        active, mode, areas = self._context()
        if active is None:
            return
        if (doc.path == active.path or doc.path in self._shown or mode is DisplayMode.DAY
                or (areas and self._shares_area(doc, areas))):
            self.update_content()

    def _on_rename(self, doc: Document, old_path: str):
        active, mode, areas = self._context()
        if active is None:
            return
        if (doc.path == active.path or old_path in self._shown or mode is DisplayMode.DAY
                or (areas and self._shares_area(doc, areas))):
            self.update_content()

    def _on_delete(self, doc: Document):
        active, mode, areas = self._context()
        if active is None:
            return
        # The deleted file's metadata is gone, so any area view may be stale.
        if areas or mode is DisplayMode.DAY:
            self.update_content()

    # -- rendering ----------------------------------------------------------

    def update_content(self):
        with self.app.lock:
            if self.state is ViewState.RENDERING:
                self._pending = True
                return
            self.state = ViewState.RENDERING
            try:
                while True:
                    self._pending = False
                    self.tree = self._build()
                    self.revision += 1
                    if not self._pending:
                        break
            finally:
                self.state = ViewState.IDLE

    def _build(self) -> Node:
        self._links = {}
        self._shown = set()
        root = Node("div", cls="dynamic-widget-content")
        active, mode, areas = self._context()
        self.mode = mode

        if active is None:
            root.create_el("p", text=NO_ACTIVE_FILE_TEXT, cls="dynamic-widget-no-file")
            return root

        cache = self.app.metadata_cache
        root.create_el("h2", text=header_text(mode, active, areas))
        if areas:
            related = find_by_areas(self.app.vault.get_files(), cache, areas)
            for group in group_by_buckets(related, self.folder_order):
                root.append(self.make_section(group.bucket, group.documents, active, bucket=group.bucket))
        elif mode is DisplayMode.DAY:
            day = parse_day(active.basename)
            notes = self.app.vault.get_markdown_files()
            root.append(self.make_section("Created", find_by_day(notes, day, "created"), active))
            root.append(self.make_section("Modified", find_by_day(notes, day, "modified"), active))
        else:
            root.create_el("p", text=OTHER_TEXT, cls="dynamic-widget-other")
        return root

    def make_section(self, title: str, documents, active: Document | None, bucket: str | None = None) -> Node:
        if not documents:
            return Node("div")
        section = Node("section", cls="dynamic-widget-section")
        section.create_el("h4", text=title)
        section.append(self.make_link_list(documents, active, bucket=bucket))
        return section

    def make_link_list(self, documents, active: Document | None, bucket: str | None = None) -> Node:
        if not documents:
            return Node("div")
        cache = self.app.metadata_cache
        ol = Node("ol", cls="dynamic-widget-list")
        for doc in documents:
            li = ol.create_el("li")
            if self.emoji_bullets:
                li.create_el("span", text=bullet_for(doc, bucket, self.default_bullet), cls="dynamic-widget-bullet")
            title = entry_title(doc, cache)
            self._shown.add(doc.path)
            if active is not None and active.path == doc.path:
                li.create_el("span", text=title, cls="dynamic-widget-active-file")
                continue
            li.create_el("a", text=title, cls="dynamic-widget-link", attrs={"href": "#", "data-path": doc.path})
            self._links[doc.path] = doc
        return ol

    def activate(self, path: str) -> bool:
        """Open a document linked from the current tree; False if it is not linked."""
        with self.app.lock:
            doc = self._links.get(path)
            if doc is None or self.app.vault.get_file(doc.path) is None:
                return False
            print(f"[widget] Opening {doc.path} ({self.open_in})")
            self.app.workspace.open_file(doc, new_tab=self.open_in == "tab")
            return True
