"""
Tests for the analyze_image command line tool
"""

import json
import pytest
from unittest.mock import patch

from meditrust import analyze_image
from meditrust.services.errors import AnalysisTimeoutError


@pytest.fixture
def photo_file(tmp_path, paracetamol_photo):
    path = tmp_path / "tablet.png"
    path.write_bytes(paracetamol_photo)
    return path


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("MEDITRUST_REFERENCE_URL", "MEDITRUST_REFERENCE_DB", "MEDITRUST_TIMEOUT_SECONDS"):
        monkeypatch.delenv(name, raising=False)


@pytest.mark.integration
class TestAnalyzeImageCLI:

    def test_summary_output(self, photo_file, capsys):
        assert analyze_image.main([str(photo_file)]) == 0

        out = capsys.readouterr().out
        assert "MediTrust Medicine Authentication" in out
        assert "Likely authentic" in out
        assert "Paracetamol" in out

    def test_json_output(self, photo_file, capsys):
        assert analyze_image.main([str(photo_file), "--json"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["authentic"] is True
        assert data["matchedMedicine"]["batchNumber"] == "PCM-2024-001"

    def test_custom_reference_db(self, photo_file, tmp_path, reference_db, capsys):
        catalogue = tmp_path / "catalogue.json"
        catalogue.write_text(json.dumps({"medicines": [reference_db.get("med-002").to_dict()]}))

        assert analyze_image.main([str(photo_file), "--json", "-r", str(catalogue)]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["authentic"] is False


class TestAnalyzeImageErrors:

    def test_missing_file(self, tmp_path, capsys):
        assert analyze_image.main([str(tmp_path / "nope.jpg")]) == 1
        assert "not found" in capsys.readouterr().err

    def test_undecodable_file(self, tmp_path, capsys):
        path = tmp_path / "broken.png"
        path.write_bytes(b"not really a png")

        assert analyze_image.main([str(path), "--json"]) == 1
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "could not be decoded" in captured.err

    def test_bad_reference_db(self, photo_file, tmp_path, capsys):
        catalogue = tmp_path / "catalogue.json"
        catalogue.write_text("{not json")

        assert analyze_image.main([str(photo_file), "-r", str(catalogue)]) == 1
        assert "reference catalogue" in capsys.readouterr().err

    def test_invalid_timeout(self, photo_file, capsys):
        assert analyze_image.main([str(photo_file), "--timeout", "0"]) == 1
        assert "timeout_seconds" in capsys.readouterr().err

    def test_timeout_reported(self, photo_file, capsys):
        with patch.object(analyze_image, "analyze_medicine_image", side_effect=AnalysisTimeoutError(1.0)):
            assert analyze_image.main([str(photo_file), "-t", "1"]) == 1
        assert "deadline" in capsys.readouterr().err
