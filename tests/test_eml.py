"""Tests for EML export and import."""

from mailbak.exporters import EmlExporter, EmlImporter
from mailbak.exporters.eml import unique_name

from conftest import SIMPLE_RAW, make_message


class TestUniqueName:
    def test_unused(self):
        assert unique_name("a.eml", set()) == "a.eml"

    def test_suffixes(self):
        used = {"a.eml", "a_2.eml"}
        assert unique_name("a.eml", used) == "a_3.eml"


class TestEmlExporter:
    def test_raw_written_verbatim(self, tmp_path):
        m = make_message(uid=5, subject="Quarterly report", raw=SIMPLE_RAW)
        [path] = EmlExporter().export([m], tmp_path / "inbox")
        assert path.name == "2024-01-15_000005_Quarterly_report.eml"
        assert path.read_bytes() == SIMPLE_RAW

    def test_composed_without_raw(self, tmp_path):
        m = make_message(uid=1, subject="Plain", html="<b>hi</b>")
        [path] = EmlExporter().export([m], tmp_path)
        content = path.read_bytes()
        assert b"Subject: Plain\n" in content
        assert b"Content-Type: text/html; charset=utf-8\n" in content
        assert content.endswith(b"<b>hi</b>")

    def test_colliding_names_get_suffix(self, tmp_path):
        messages = [make_message(uid=1, subject="Same"), make_message(uid=1, subject="Same")]
        paths = EmlExporter().export(messages, tmp_path)
        assert [p.name for p in paths] == [
            "2024-01-15_000001_Same.eml",
            "2024-01-15_000001_Same_2.eml",
        ]
        assert len(list(tmp_path.glob("*.eml"))) == 2

    def test_export_by_folder(self, tmp_path):
        result = EmlExporter().export_by_folder(
            {"INBOX": [make_message(1)], "Sent Items": [make_message(2)]},
            tmp_path,
        )
        assert result["INBOX"][0].parent == tmp_path / "inbox"
        assert result["Sent Items"][0].parent == tmp_path / "sent_items"


class TestEmlImporter:
    def test_reads_in_filename_order(self, tmp_path):
        messages = [make_message(uid=u, subject=f"Message {u}", raw=None) for u in (3, 1, 2)]
        EmlExporter().export(messages, tmp_path)
        (tmp_path / "notes.txt").write_text("ignored")
        imported = EmlImporter().import_messages(tmp_path)
        assert [m.subject for m in imported] == ["Message 1", "Message 2", "Message 3"]
        assert [m.uid for m in imported] == [1, 2, 3]
        assert imported[0].id == "<msg-1@example.com>"
        assert imported[0].raw is not None

    def test_skips_empty_files(self, tmp_path):
        (tmp_path / "a.eml").write_bytes(b"")
        (tmp_path / "b.eml").write_bytes(SIMPLE_RAW)
        imported = EmlImporter().import_messages(tmp_path)
        assert [m.subject for m in imported] == ["Quarterly report"]
