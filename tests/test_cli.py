import json

import pandas as pd
import pytest
from click.testing import CliRunner
from stairval.notepad import create_notepad

from conftest import MEDICATION_ROWS
from medsig.__main__ import _report_issues, main


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def test_sign_prints_the_signature(runner, workbook_path):
    result = runner.invoke(
        main, ["sign", "-e", workbook_path, "-m", "estradiol-cream-topiclick", "--dose", "2", "--unit", "clicks"]
    )
    assert result.exit_code == 0, result.output
    assert "Apply 2 clicks (0.5 mL, 25 mg) topically twice daily using Topiclick dispenser." in result.output
    assert "* Each click dispenses 0.25 mL" in result.output


def test_sign_json(runner, workbook_path):
    result = runner.invoke(
        main,
        ["sign", "--excel-path", workbook_path, "-m", "amlodipine-5mg-tab", "--dose", "2.5", "--unit", "mg", "--json"],
    )
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["humanReadable"] == "Take 1/2 tablet (2.5 mg) by mouth once daily."
    assert payload["fhirRepresentation"]["dosageInstruction"]["route"] == "Orally"


def test_sign_uses_workbook_frequencies(runner, workbook_path):
    result = runner.invoke(
        main,
        [
            "sign", "-e", workbook_path, "-m", "amlodipine-5mg-tab", "--dose", "1", "--unit", "tablet",
            "--frequency", "Q4H", "--as-needed", "pain", "--no-templates",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Take 1 tablet (5 mg) by mouth every 4 hours as needed for pain." in result.output


def test_sign_unknown_medication(runner, workbook_path):
    result = runner.invoke(main, ["sign", "-e", workbook_path, "-m", "nope", "--dose", "1", "--unit", "tablet"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_sign_rejects_invalid_dose(runner, workbook_path):
    result = runner.invoke(
        main, ["sign", "-e", workbook_path, "-m", "amlodipine-5mg-tab", "--dose", "0", "--unit", "tablet"]
    )
    assert result.exit_code == 1
    assert "Dose must be greater than zero" in result.output


def test_days_supply(runner, workbook_path):
    result = runner.invoke(
        main, ["days-supply", "-e", workbook_path, "-m", "nandrolone-200mg-ml", "--dose", "200", "--unit", "mg"]
    )
    assert result.exit_code == 0, result.output
    assert "Dose: 200 mg = 1 mL" in result.output
    assert "Days supply: 70" in result.output


def test_days_supply_not_available(runner, workbook_path):
    result = runner.invoke(
        main, ["days-supply", "-e", workbook_path, "-m", "amlodipine-5mg-tab", "--dose", "1", "--unit", "puff"]
    )
    assert result.exit_code == 0, result.output
    assert "not available" in result.output


def test_explain(runner, workbook_path):
    result = runner.invoke(
        main, ["explain", "-e", workbook_path, "-m", "nandrolone-200mg-ml", "--dose", "200", "--unit", "mg"]
    )
    assert result.exit_code == 0, result.output
    assert "Selected: default" in result.output


@pytest.fixture
def no_default_frequency_path(tmp_path) -> str:
    path = tmp_path / "no-frequency.xlsx"
    rows = [dict(MEDICATION_ROWS[0], Frequency=None)]
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        pd.DataFrame(rows).set_index("Medication ID").to_excel(writer, sheet_name="medications")
    return str(path)


@pytest.mark.parametrize("command", ["sign", "days-supply", "explain"])
def test_missing_frequency_is_reported(runner, no_default_frequency_path, command):
    result = runner.invoke(
        main, [command, "-e", no_default_frequency_path, "-m", "amlodipine-5mg-tab", "--dose", "1", "--unit", "tablet"]
    )
    assert result.exit_code == 1
    assert "Error: Invalid frequency" in result.output
    assert not isinstance(result.exception, ValueError)


def test_registry(runner):
    result = runner.invoke(main, ["registry"])
    assert result.exit_code == 0, result.output
    assert "Base strategies (by specificity):" in result.output
    assert "[20] strength-display" in result.output


def test_validate_excel(runner, workbook_path):
    result = runner.invoke(main, ["validate-excel", workbook_path])
    assert result.exit_code == 0, result.output
    assert "mapped 3 medication profiles" in result.output
    assert "Validated 3 medication profiles" in result.output


def test_validate_excel_without_files(runner):
    result = runner.invoke(main, ["validate-excel"])
    assert result.exit_code == 1
    assert "No input files specified." in result.output


def test_validate_excel_reports_unknown_frequency(runner, tmp_path):
    path = tmp_path / "bad.xlsx"
    rows = [dict(MEDICATION_ROWS[0], Frequency="Whenever")]
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        pd.DataFrame(rows).set_index("Medication ID").to_excel(writer, sheet_name="medications")

    result = runner.invoke(main, ["validate-excel", str(path), "--verbose"])
    assert result.exit_code == 1
    assert "unknown frequency 'Whenever'" in result.output


def test_report_issues_outputs_both_blocks(capsys):
    n = create_notepad("report")
    n.add_warning("warn 1")
    n.add_error("err 1")

    _report_issues(n)
    out = capsys.readouterr().out
    assert "Warnings found" in out
    assert "- warn 1" in out
    assert "Errors found" in out
    assert "- err 1" in out


def test_log_file_option(runner, tmp_path):
    log_path = tmp_path / "medsig.log"
    result = runner.invoke(main, ["--log-file-path", str(log_path), "registry"])
    assert result.exit_code == 0, result.output
