"""Unit tests for JSON file helpers."""

import pytest

from hanzicards.utils.file_io import read_json, write_json


class TestJSONFunctions:
    """Test JSON read/write functions."""

    def test_write_and_read_json(self, tmp_path):
        data = {"symbol": "累", "status": "enriched", "media": ["image", "audio"]}
        file_path = tmp_path / "card.json"

        write_json(data, file_path)

        assert file_path.exists()
        assert read_json(file_path) == data

    def test_write_json_creates_directories(self, tmp_path):
        """Test that write_json creates parent directories."""
        file_path = tmp_path / "records" / "cards" / "c1.json"

        write_json({"key": "value"}, file_path)

        assert read_json(file_path) == {"key": "value"}

    def test_write_json_keeps_unicode(self, tmp_path):
        file_path = tmp_path / "unicode.json"

        write_json({"symbol": "銀行", "display": "yínháng"}, file_path)

        content = file_path.read_text(encoding="utf-8")
        assert "銀行" in content
        assert "yínháng" in content

    def test_write_json_replaces_existing_file(self, tmp_path):
        file_path = tmp_path / "card.json"
        write_json({"stamp": 1}, file_path)

        write_json({"stamp": 2}, file_path)

        assert read_json(file_path) == {"stamp": 2}
        # No temp files left behind
        assert [p.name for p in tmp_path.iterdir()] == ["card.json"]

    def test_failed_write_keeps_previous_document(self, tmp_path):
        file_path = tmp_path / "card.json"
        write_json({"stamp": 1}, file_path)

        with pytest.raises(TypeError):
            write_json({"stamp": object()}, file_path)

        assert read_json(file_path) == {"stamp": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["card.json"]

    def test_read_json_nonexistent_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_json(tmp_path / "nonexistent.json")

    def test_write_json_list(self, tmp_path):
        data = [{"id": 1}, {"id": 2}, {"id": 3}]
        file_path = tmp_path / "list.json"

        write_json(data, file_path)

        assert read_json(file_path) == data
