"""Shared vault fixtures for the widget, host and server tests."""

import os
from datetime import datetime
from pathlib import Path

import pytest

from host import App


def write_note(root: Path, rel: str, text: str = "", mtime: float | None = None) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def day_ts(year: int, month: int, day: int, hour: int = 12, minute: int = 0) -> float:
    return datetime(year, month, day, hour, minute).timestamp()


SAMPLE_NOTES = {
    "Areas/Health.md": "---\nareas: [[Health]]\n---\n# Health\n",
    "Inbox 📥/Call doctor.md": '---\nareas:\n  - "[[Health]]"\n---\nBook a checkup.\n',
    "Projects 🏔️/Active ✅/Run 10k.md": '---\ntitle: Run a 10k\narea: "[[Health]]"\n---\n',
    "Projects 🏔️/Active ✅/Ship app.md": "---\nareas: [[Work]]\n---\n",
    "Projects 🏔️/Active ✅ Old/Legacy.md": '---\narea: "[[Health]]"\n---\n',
    "Resources 🛠️/Nutrition.md": '---\nareas: ["[[Health]]", "[[Food]]"]\n---\n',
    "2025-07-15.md": "Daily note\n",
    "Random.md": "Nothing to see.\n",
}


@pytest.fixture
def vault_dir(tmp_path):
    root = tmp_path / "vault"
    for rel, text in SAMPLE_NOTES.items():
        write_note(root, rel, text)
    (root / "Inbox 📥" / "photo.png").write_bytes(b"\x89PNG")
    (root / ".obsidian").mkdir()
    (root / ".obsidian" / "workspace.md").write_text("ignored", encoding="utf-8")
    return root


@pytest.fixture
def host_app(vault_dir):
    return App(vault_dir, excluded_dirs=[".obsidian"])
