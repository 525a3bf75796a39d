"""
Command-line interface for medsig.

Medication profiles are read from an Excel workbook (or CSV) with a `medications`
sheet; see `medsig.mapper` for the expected columns.
"""

import click
import dataclasses
import json
import logging
import sys
import typing

from collections import namedtuple
from stairval.notepad import create_notepad

from .config import SignatureConfig
from .context import create_request_context
from .dosage import describe_quantity
from .errors import StrategySelectionError
from .loader import load_sheets_as_tables
from .mapper import DefaultProfileMapper, MappedWorkbook
from .medication import MedicationProfile
from .signature import SignatureService

ValidationEntry = namedtuple("ValidationEntry", ["medication", "field", "message", "level"])


@click.group()
@click.option("--verbose-logging", is_flag=True, help="Also emit debug logs to stderr")
@click.option(
    "--log-file-path",
    type=click.Path(dir_okay=False, writable=True),
    help="Append timestamped logs to this file",
)
def main(verbose_logging: bool = False, log_file_path: typing.Optional[str] = None):
    """medsig: medication signature generation from structured prescribing data."""
    handlers: list[logging.Handler] = []
    if log_file_path:
        handlers.append(logging.FileHandler(log_file_path, mode="a", encoding="utf-8"))
    if verbose_logging:
        handlers.append(logging.StreamHandler(sys.stderr))
    if handlers:
        logging.basicConfig(
            level=logging.DEBUG if verbose_logging else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            handlers=handlers,
        )


def _excel_option(func):
    return click.option(
        "-e",
        "--excel-path",
        "excel_file",
        required=True,
        type=click.Path(exists=True, dir_okay=False),
        help="path to the Excel workbook (or CSV file) holding medication profiles",
    )(func)


def _request_options(func):
    options = [
        click.option("-m", "--medication", "medication_id", required=True, help="medication id (first column)"),
        click.option("--dose", "dose_value", required=True, type=float, help="dose amount, e.g. 0.5"),
        click.option("--unit", "dose_unit", required=True, help="dose unit, e.g. tablet, mg, mL, click"),
        click.option("--route", default=None, help="route key or abbreviation (defaults to the profile's)"),
        click.option("--frequency", default=None, help="frequency key, e.g. 'Twice Daily' or BID"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _report_issues(notepad):
    # if there were errors, show them
    if notepad.has_errors(include_subsections=True):
        click.echo("Errors found:")
        for err in notepad.errors():
            click.echo(f"- {err.message}")
    # show any warnings but keep going
    if notepad.has_warnings(include_subsections=True):
        click.echo("Warnings found:")
        for w in notepad.warnings():
            click.echo(f"- {w.message}")


def _load_workbook(excel_file: str, service: SignatureService, notepad) -> MappedWorkbook:
    try:
        tables = load_sheets_as_tables(excel_file)
    except Exception as e:
        click.echo(f"Error: failed to read {excel_file!r}: {e}", err=True)
        sys.exit(1)
    mapped = DefaultProfileMapper(service.tables).apply_mapping(tables, notepad)
    mapped.apply_to(service.tables)
    return mapped


def _find_profile(mapped: MappedWorkbook, medication_id: str) -> MedicationProfile:
    profile = mapped.profiles.get(medication_id)
    if profile is None:
        known = ", ".join(sorted(mapped.profiles)) or "none"
        click.echo(f"Error: medication {medication_id!r} not found (known: {known})", err=True)
        sys.exit(1)
    return profile


def _create_context(profile: MedicationProfile, *args, **kwargs):
    try:
        return create_request_context(profile, *args, **kwargs)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command(name="sign")
@_excel_option
@_request_options
@click.option("--instructions", default=None, help="free-text special instructions")
@click.option("--as-needed", "as_needed", default=None, help="PRN indication, e.g. 'pain' ('' for none)")
@click.option("--json", "as_json", is_flag=True, help="print the full result as JSON")
@click.option("--no-templates", is_flag=True, help="compose the sentence directly instead of rendering templates")
def sign(
    excel_file: str,
    medication_id: str,
    dose_value: float,
    dose_unit: str,
    route: typing.Optional[str],
    frequency: typing.Optional[str],
    instructions: typing.Optional[str],
    as_needed: typing.Optional[str],
    as_json: bool,
    no_templates: bool,
):
    """
    Generate the human-readable signature and its FHIR dosage record for one medication.
    """
    config = SignatureConfig.from_env()
    if no_templates:
        config = dataclasses.replace(config, use_templates=False)
    service = SignatureService.from_config(config)

    notepad = create_notepad("signature")
    mapped = _load_workbook(excel_file, service, notepad)
    profile = _find_profile(mapped, medication_id)

    context = _create_context(
        profile, dose_value, dose_unit, route, frequency, instructions, as_needed=as_needed
    )

    service.validate(profile, context.dose, notepad)
    _report_issues(notepad)
    if notepad.has_errors(include_subsections=True):
        sys.exit(1)

    try:
        result = service.generate(context)
    except StrategySelectionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    click.echo(result.human_readable)
    if result.instruction is not None:
        for extra in result.instruction.additional_instructions:
            click.echo(f"  * {extra}")


@main.command(name="days-supply")
@_excel_option
@_request_options
def days_supply(
    excel_file: str,
    medication_id: str,
    dose_value: float,
    dose_unit: str,
    route: typing.Optional[str],
    frequency: typing.Optional[str],
):
    """
    Whole days one dispensed package lasts at the given dose and frequency.
    """
    service = SignatureService.from_config()
    notepad = create_notepad("days-supply")
    mapped = _load_workbook(excel_file, service, notepad)
    profile = _find_profile(mapped, medication_id)
    context = _create_context(profile, dose_value, dose_unit, route, frequency)

    days = service.days_supply(profile, context.dose, context.frequency)
    if days is None:
        click.echo("Days supply: not available (missing package info, unknown frequency or incompatible units)")
        return
    dual = service.dual_dosage(profile, context.dose)
    if dual is not None:
        click.echo(f"Dose: {describe_quantity(dual.weight_based)} = {describe_quantity(dual.volume_based)}")
    click.echo(f"Days supply: {days}")


@main.command(name="explain")
@_excel_option
@_request_options
def explain(
    excel_file: str,
    medication_id: str,
    dose_value: float,
    dose_unit: str,
    route: typing.Optional[str],
    frequency: typing.Optional[str],
):
    """
    Show which strategies match a request and the order they would run in.
    """
    service = SignatureService.from_config()
    notepad = create_notepad("explain")
    mapped = _load_workbook(excel_file, service, notepad)
    profile = _find_profile(mapped, medication_id)
    context = _create_context(profile, dose_value, dose_unit, route, frequency)
    click.echo(service.dispatcher.explain_selection(context))


@main.command(name="registry")
def registry():
    """List the registered base strategies and modifiers."""
    service = SignatureService.from_config()
    click.echo(service.registry.visualize_registry())


@main.command(name="validate-excel")
@click.argument(
    "workbook_paths",
    nargs=-1,
    type=click.Path(exists=True, dir_okay=False),
)
@click.option("--strict-dose-forms/--no-strict-dose-forms", default=False,
              help="Treat dose forms missing from the dose-form table as errors (default: warn).")
@click.option("--verbose", is_flag=True, help="Show every profile check, not just the summary")
def validate_excel(workbook_paths: tuple[str, ...], strict_dose_forms: bool, verbose: bool):
    """
    Map every medication profile in one or more workbooks and check that its defaults
    resolve against the reference tables.
    """
    if not workbook_paths:
        click.echo("No input files specified.", err=True)
        sys.exit(1)

    service = SignatureService.from_config()
    notepad = create_notepad("validate")
    total = 0
    for workbook_path in workbook_paths:
        try:
            tables = load_sheets_as_tables(workbook_path)
        except Exception as e:
            notepad.add_error(f"Failed to read {workbook_path!r}: {e}")
            continue
        mapper = DefaultProfileMapper(service.tables, strict_dose_forms=strict_dose_forms)
        mapped = mapper.apply_mapping(tables, notepad)
        mapped.apply_to(service.tables)

        entries = [entry for profile in mapped.profiles.values() for entry in _check_profile(profile, service)]
        for entry in entries:
            (notepad.add_error if entry.level == "error" else notepad.add_warning)(
                f"Medication {entry.medication!r}: {entry.message}"
            )
        if verbose:
            for entry in entries:
                color = "red" if entry.level == "error" else "yellow"
                click.echo(click.style(f"{entry.medication:30} {entry.field:18} {entry.message}", fg=color))
        total += len(mapped.profiles)
        click.echo(f"{workbook_path}: mapped {len(mapped.profiles)} medication profiles")

    _report_issues(notepad)
    click.echo(f"Validated {total} medication profiles")
    if notepad.has_errors(include_subsections=True):
        sys.exit(1)


def _check_profile(profile: MedicationProfile, service: SignatureService) -> list[ValidationEntry]:
    entries = []
    tables = service.tables
    if profile.default_frequency and tables.frequency(profile.default_frequency) is None:
        entries.append(ValidationEntry(profile.id, "default_frequency",
                                       f"unknown frequency {profile.default_frequency!r}", "error"))
    if profile.default_route and tables.route(profile.default_route) is None:
        entries.append(ValidationEntry(profile.id, "default_route",
                                       f"route {profile.default_route!r} is not in the route table", "warning"))
    form = tables.dose_form(profile.dose_form)
    if form is not None and profile.default_route:
        route = tables.route(profile.default_route)
        if route is not None and route.name not in form.applicable_routes:
            entries.append(ValidationEntry(profile.id, "default_route",
                                           f"route {route.name!r} is not applicable to {form.name}", "warning"))
    if profile.package_info is None:
        entries.append(ValidationEntry(profile.id, "package_info",
                                       "no package info; days supply cannot be computed", "warning"))
    preview = service.dispatcher.preview(
        create_request_context(
            profile,
            1,
            profile.strength.denominator.unit,
            profile.default_route,
            profile.default_frequency or "Once Daily",
        )
    )
    if not preview.success:
        entries.append(ValidationEntry(profile.id, "strategy", preview.reason, "error"))
    return entries


if __name__ == "__main__":
    main()
