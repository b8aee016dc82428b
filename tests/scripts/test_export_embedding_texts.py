import json

import pytest


@pytest.mark.unit
def test_export_writes_one_line_per_entry(tmp_path):
    from scripts.export_embedding_texts import main

    input_file = tmp_path / "entries.json"
    output_file = tmp_path / "out" / "texts.jsonl"
    input_file.write_text(
        json.dumps(
            [
                {"entry_id": "roc-114-1", "title": "Bail", "tags": ["bail"]},
                {"title": "No id"},
                {"entry_id": 42, "title": "Theft"},
            ]
        ),
        encoding="utf-8",
    )

    exit_code = main(["--input", str(input_file), "--output", str(output_file), "--quiet"])

    lines = [json.loads(line) for line in output_file.read_text(encoding="utf-8").splitlines()]
    assert exit_code == 0
    assert lines == [
        {"entry_id": "roc-114-1", "embedding_text": "Title: Bail\n\nTags: bail"},
        {"entry_id": "42", "embedding_text": "Title: Theft"},
    ]


@pytest.mark.unit
def test_load_entries_accepts_wrapped_export(tmp_path):
    from scripts.export_embedding_texts import load_entries

    input_file = tmp_path / "entries.json"
    input_file.write_text(json.dumps({"entries": [{"entry_id": "a"}, "junk"]}), encoding="utf-8")

    assert load_entries(input_file) == [{"entry_id": "a"}]


@pytest.mark.unit
def test_invalid_input_returns_error_code(tmp_path):
    from scripts.export_embedding_texts import main

    input_file = tmp_path / "entries.json"
    input_file.write_text("not json", encoding="utf-8")

    assert main(["--input", str(input_file), "--output", str(tmp_path / "out.jsonl")]) == 1


@pytest.mark.unit
def test_missing_input_returns_error_code(tmp_path):
    from scripts.export_embedding_texts import main

    assert main(["--input", str(tmp_path / "missing.json"), "--output", str(tmp_path / "out.jsonl")]) == 1
