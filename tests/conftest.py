import pandas as pd
import pytest

from medsig.config import SignatureConfig
from medsig.medication import (
    DispenserInfo,
    Ingredient,
    MedicationProfile,
    PackageInfo,
    Quantity,
    Ratio,
)
from medsig.signature import SignatureService
from medsig.tables import ReferenceTables, default_tables


def make_profile(
    id: str,
    dose_form: str,
    strength: tuple[float, str, float, str],
    name: str | None = None,
    **kwargs,
) -> MedicationProfile:
    """
    Small factory so tests read like the prescriptions they describe:
    make_profile("x", "Tablet", (5, "mg", 1, "tablet"), package_info=...)
    """
    value, unit, per_value, per_unit = strength
    ratio = Ratio(Quantity(value, unit), Quantity(per_value, per_unit))
    return MedicationProfile(
        id=id,
        name=name or id,
        dose_form=dose_form,
        ingredients=(Ingredient(name or id, ratio),),
        **kwargs,
    )


@pytest.fixture
def tables() -> ReferenceTables:
    return default_tables()


@pytest.fixture
def tablet() -> MedicationProfile:
    """5 mg tablets, 30 per bottle, taken by mouth once daily."""
    return make_profile(
        "amlodipine-5mg-tab",
        "Tablet",
        (5, "mg", 1, "tablet"),
        name="Amlodipine",
        package_info=PackageInfo(30, "tablet"),
        default_route="Orally",
        default_frequency="Once Daily",
    )


@pytest.fixture
def vial() -> MedicationProfile:
    """200 mg/mL multi-dose vial that no named strategy claims."""
    return make_profile(
        "nandrolone-200mg-ml",
        "Vial",
        (200, "mg", 1, "mL"),
        name="Nandrolone Decanoate",
        package_info=PackageInfo(10, "mL"),
        default_route="IM",
        default_frequency="Once Per Week",
    )


@pytest.fixture
def testosterone() -> MedicationProfile:
    return make_profile(
        "testosterone-cypionate-200mg-ml",
        "Vial",
        (200, "mg", 1, "mL"),
        name="Testosterone Cypionate",
        package_info=PackageInfo(10, "mL"),
        default_route="IM",
        default_frequency="Once Every Two Weeks",
    )


@pytest.fixture
def cream() -> MedicationProfile:
    """50 mg/mL cream in a Topiclick dispenser (4 clicks = 1 mL)."""
    return make_profile(
        "estradiol-cream-topiclick",
        "Cream",
        (50, "mg", 1, "mL"),
        name="Estradiol Cream",
        package_info=PackageInfo(30, "mL"),
        dispenser_info=DispenserInfo("Topiclick", "click", "clicks", 4),
        default_route="Topically",
        default_frequency="Twice Daily",
    )


@pytest.fixture
def suspension() -> MedicationProfile:
    return make_profile(
        "amoxicillin-susp-100mg-5ml",
        "Oral Suspension",
        (100, "mg", 5, "mL"),
        name="Amoxicillin",
        package_info=PackageInfo(150, "mL"),
        default_route="Orally",
        default_frequency="Twice Daily",
    )


@pytest.fixture
def combination() -> MedicationProfile:
    """400 mg amoxicillin + 57 mg clavulanate per 5 mL; dosed by volume only."""
    return MedicationProfile(
        id="amox-clav-susp-400-57",
        name="Amoxicillin-Clavulanate",
        dose_form="Oral Suspension",
        ingredients=(
            Ingredient("amoxicillin", Ratio(Quantity(400, "mg"), Quantity(5, "mL"))),
            Ingredient("clavulanate", Ratio(Quantity(57, "mg"), Quantity(5, "mL"))),
        ),
        package_info=PackageInfo(100, "mL"),
        default_route="Orally",
        default_frequency="Twice Daily",
    )


@pytest.fixture
def service(tables: ReferenceTables) -> SignatureService:
    return SignatureService.from_config(SignatureConfig(performance_logging=False), tables=tables)


MEDICATION_ROWS = [
    {
        "Medication ID": "amlodipine-5mg-tab", "Medication": "Amlodipine", "Form": "Tablet",
        "Strength": 5, "Strength Units": "mg", "Per": 1, "Per Unit": "tablet",
        "Package Size": 30, "Package Unit": "tablet", "Dispenser": None,
        "Route": "Orally", "Frequency": "Once Daily",
    },
    {
        "Medication ID": "estradiol-cream-topiclick", "Medication": "Estradiol Cream", "Form": "Cream",
        "Strength": 50, "Strength Units": "mg", "Per": 1, "Per Unit": "mL",
        "Package Size": 30, "Package Unit": "mL", "Dispenser": "Topiclick",
        "Route": "Topically", "Frequency": "Twice Daily",
    },
    {
        "Medication ID": "nandrolone-200mg-ml", "Medication": "Nandrolone Decanoate", "Form": "Vial",
        "Strength": 200, "Strength Units": "mg", "Per": 1, "Per Unit": "mL",
        "Package Size": 10, "Package Unit": "mL", "Dispenser": None,
        "Route": "IM", "Frequency": "Once Per Week",
    },
]

FREQUENCY_ROWS = [
    {"Name": "Every Four Hours", "Count": 6, "Period": 1, "Unit": "d", "Text": "every 4 hours", "Abbreviation": "Q4H"},
]


@pytest.fixture
def workbook_path(tmp_path) -> str:
    """An .xlsx workbook with `medications` and `frequencies` sheets."""
    path = tmp_path / "profiles.xlsx"
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        pd.DataFrame(MEDICATION_ROWS).set_index("Medication ID").to_excel(writer, sheet_name="medications")
        pd.DataFrame(FREQUENCY_ROWS).set_index("Name").to_excel(writer, sheet_name="frequencies")
    return str(path)
