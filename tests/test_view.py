import os

import pytest

from tests.conftest import day_ts, write_note
from widget import (
    NO_ACTIVE_FILE_TEXT,
    ORDERED_FOLDER_NAMES,
    VIEW_TYPE_DYNAMIC_WIDGET,
    DisplayMode,
    DynamicWidgetView,
    ViewState,
)


@pytest.fixture
def view(host_app):
    v = DynamicWidgetView(host_app)
    v.on_open()
    return v


def open_path(host_app, path, new_tab=False):
    host_app.workspace.open_file(host_app.vault.get_file(path), new_tab=new_tab)


def section_titles(tree):
    return [s.children[0].text for s in tree.find_all("section")]


def entries(section):
    return [
        (node.cls, node.text)
        for li in section.find_all("li")
        for node in li.children
        if node.cls != "dynamic-widget-bullet"
    ]


def test_identity(view):
    assert view.view_type() == VIEW_TYPE_DYNAMIC_WIDGET
    assert view.display_text() == "Dynamic Widget"
    assert view.icon() == "activity"


def test_rejects_unknown_open_in(host_app):
    with pytest.raises(ValueError):
        DynamicWidgetView(host_app, open_in="window")


def test_no_active_document_shows_only_fallback(view):
    assert view.revision == 1
    assert view.mode is DisplayMode.OTHER
    assert len(view.tree.children) == 1
    message = view.tree.children[0]
    assert (message.tag, message.text, message.cls) == ("p", NO_ACTIVE_FILE_TEXT, "dynamic-widget-no-file")


def test_area_document_groups_related_notes_by_bucket(view, host_app):
    open_path(host_app, "Areas/Health.md")

    assert view.mode is DisplayMode.AREAS
    header = view.tree.children[0]
    assert (header.tag, header.text) == ("h2", "Health")
    # one node per bucket, empty buckets as placeholders
    assert len(view.tree.children) == 1 + len(ORDERED_FOLDER_NAMES)
    assert section_titles(view.tree) == ["Inbox 📥", "Projects 🏔️/Active ✅", "Resources 🛠️"]

    inbox, active, resources = view.tree.find_all("section")
    assert entries(inbox) == [("dynamic-widget-link", "Call doctor")]
    assert entries(active) == [("dynamic-widget-link", "Legacy"), ("dynamic-widget-link", "Run a 10k")]
    assert entries(resources) == [("dynamic-widget-link", "Nutrition")]
    assert "Ship app" not in view.render_html()


def test_active_entry_is_inert(view, host_app):
    open_path(host_app, "Inbox 📥/Call doctor.md")
    inbox = view.tree.find_all("section")[0]
    assert entries(inbox) == [("dynamic-widget-active-file", "Call doctor")]
    assert view.tree.find_all("a", "dynamic-widget-link")
    assert all(a.attrs["data-path"] != "Inbox 📥/Call doctor.md" for a in view.tree.find_all("a"))
    assert view.activate("Inbox 📥/Call doctor.md") is False


def test_single_area_property(view, host_app):
    open_path(host_app, "Projects 🏔️/Active ✅/Run 10k.md")
    assert view.mode is DisplayMode.AREA
    assert view.tree.children[0].text == "Health"
    assert "Run a 10k" in [n.text for n in view.tree.find_all("span", "dynamic-widget-active-file")]


def test_day_document_lists_same_day_notes(view, host_app):
    vault = host_app.vault
    timestamps = {
        "Random.md": (day_ts(2025, 7, 15, 9), day_ts(2025, 7, 15, 18)),
        "Areas/Health.md": (day_ts(2025, 7, 15, 11), day_ts(2025, 7, 16, 8)),
        "2025-07-15.md": (day_ts(2025, 7, 15, 7), day_ts(2025, 7, 15, 7)),
    }
    for doc in vault.get_files():
        doc.ctime, doc.mtime = timestamps.get(doc.path, (day_ts(2024, 1, 1), day_ts(2024, 1, 1)))

    open_path(host_app, "2025-07-15.md")

    assert view.mode is DisplayMode.DAY
    assert view.tree.children[0].text == "Tue, Jul 15, 2025"
    created, modified = view.tree.find_all("section")
    assert created.children[0].text == "Created"
    assert entries(created) == [
        ("dynamic-widget-link", "Health"),
        ("dynamic-widget-link", "Random"),
        ("dynamic-widget-active-file", "2025-07-15"),
    ]
    assert modified.children[0].text == "Modified"
    assert entries(modified) == [
        ("dynamic-widget-link", "Random"),
        ("dynamic-widget-active-file", "2025-07-15"),
    ]


def test_other_document(view, host_app):
    open_path(host_app, "Random.md")
    assert view.mode is DisplayMode.OTHER
    assert [(n.tag, n.text) for n in view.tree.children] == [("h2", "Random"), ("p", "Other")]


def test_activate_opens_link_in_new_tab(view, host_app):
    open_path(host_app, "Areas/Health.md")
    assert view.activate("Resources 🛠️/Nutrition.md") is True
    ws = host_app.workspace
    assert [d.path for d in ws.tabs] == ["Areas/Health.md", "Resources 🛠️/Nutrition.md"]
    assert ws.get_active_file().path == "Resources 🛠️/Nutrition.md"
    assert view.tree.children[0].text == "Health, Food"


def test_activate_in_current_tab(host_app):
    view = DynamicWidgetView(host_app, open_in="current")
    view.on_open()
    open_path(host_app, "Areas/Health.md")
    assert view.activate("Inbox 📥/Call doctor.md") is True
    assert [d.path for d in host_app.workspace.tabs] == ["Inbox 📥/Call doctor.md"]


def test_activate_refuses_paths_not_linked(view, host_app):
    open_path(host_app, "Areas/Health.md")
    assert view.activate("Random.md") is False
    assert view.activate("Missing.md") is False
    assert host_app.workspace.get_active_file().path == "Areas/Health.md"


def test_emoji_bullets(host_app):
    view = DynamicWidgetView(host_app, emoji_bullets=True, folder_order=["Inbox 📥", "Projects 🏔️/Active", "Resources"])
    view.on_open()
    open_path(host_app, "Areas/Health.md")
    bullets = [n.text for n in view.tree.find_all("span", "dynamic-widget-bullet")]
    # bucket segment, then anywhere in the bucket name, then the document's folders
    assert bullets == ["📥", "🏔️", "🏔️", "🛠️"]


def test_emoji_bullet_default(host_app, vault_dir):
    write_note(vault_dir, "Plain/Stretch.md", "---\narea: Health\n---\n")
    host_app.vault.sync()
    view = DynamicWidgetView(host_app, emoji_bullets=True, folder_order=["Plain"], default_bullet="*")
    view.on_open()
    open_path(host_app, "Areas/Health.md")
    assert [n.text for n in view.tree.find_all("span", "dynamic-widget-bullet")] == ["*"]


def test_metadata_change_of_active_document_rerenders(view, host_app, vault_dir):
    open_path(host_app, "Random.md")
    before = view.revision
    path = write_note(vault_dir, "Random.md", "---\narea: Health\n---\n")
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 5))
    host_app.vault.sync()
    assert view.revision == before + 1
    assert view.mode is DisplayMode.AREA


def test_unrelated_metadata_change_is_ignored(view, host_app, vault_dir):
    open_path(host_app, "Random.md")
    before = view.revision
    path = write_note(vault_dir, "Projects 🏔️/Active ✅/Ship app.md", "---\nareas: [[Work]]\n---\nmore\n")
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 5))
    host_app.vault.sync()
    assert view.revision == before


def test_new_note_in_active_area_rerenders(view, host_app, vault_dir):
    open_path(host_app, "Areas/Health.md")
    before = view.revision
    write_note(vault_dir, "Goals 🎯/Sleep more.md", "---\nareas: [[Health]]\n---\n")
    host_app.vault.sync()
    assert view.revision > before
    assert "Goals 🎯" in section_titles(view.tree)


def test_rename_of_area_note_rerenders(view, host_app):
    open_path(host_app, "Areas/Health.md")
    before = view.revision
    doc = host_app.vault.get_file("Resources 🛠️/Nutrition.md")
    host_app.vault.rename(doc, "Archives 📦/Nutrition.md")
    assert view.revision == before + 1
    assert section_titles(view.tree)[-1] == "Archives 📦"


def test_rename_of_unrelated_note_is_ignored(view, host_app):
    open_path(host_app, "Areas/Health.md")
    before = view.revision
    host_app.vault.rename(host_app.vault.get_file("Random.md"), "Elsewhere.md")
    assert view.revision == before


def test_delete_rerenders_only_for_area_or_day_views(view, host_app, vault_dir):
    open_path(host_app, "Random.md")
    before = view.revision
    (vault_dir / "Projects 🏔️" / "Active ✅" / "Ship app.md").unlink()
    host_app.vault.sync()
    assert view.revision == before

    open_path(host_app, "Areas/Health.md")
    before = view.revision
    (vault_dir / "Inbox 📥" / "Call doctor.md").unlink()
    host_app.vault.sync()
    assert view.revision == before + 1
    assert "Inbox 📥" not in section_titles(view.tree)


def test_notification_during_render_is_deferred(view, host_app):
    build = view._build
    calls = []

    def reentrant_build():
        calls.append(view.state)
        if len(calls) == 1:
            view.update_content()
        return build()

    view._build = reentrant_build
    before = view.revision
    view.update_content()
    assert calls == [ViewState.RENDERING, ViewState.RENDERING]
    assert view.revision == before + 2
    assert view.state is ViewState.IDLE


def test_on_close_unsubscribes(view, host_app):
    view.on_close()
    before = view.revision
    open_path(host_app, "Areas/Health.md")
    assert view.revision == before
    assert view.tree.is_empty()
    assert view.activate("Resources 🛠️/Nutrition.md") is False
