from pathlib import Path

import pandas as pd

# Columns that need renaming → target profile fields
RENAME_MAP = {
    # medication columns
    "medication_id": "id",
    "medication": "name",
    "form": "dose_form",
    "ingredient": "ingredient_name",
    "strength": "strength_value",
    "strength_units": "strength_unit",
    "per": "per_value",
    "package_size": "package_quantity",
    "pack": "pack_size",
    "dispenser": "dispenser_type",
    "ratio": "dispenser_ratio",
    "route": "default_route",
    "frequency": "default_frequency",
    "active": "is_active",
    # frequency columns
    "unit": "period_unit",
    "text": "human_readable",
}


def _normalize_headers(df: pd.DataFrame) -> pd.DataFrame:
    df.columns = (
        df.columns.astype(str)
        .str.strip()
        .str.replace(r"\s*\(.*?\)", "", regex=True)  # drop any "(…)"
        .str.replace(r"\s+", "_", regex=True)  # spaces → underscore
        .str.replace(":", "", regex=False)  # drop colons
        .str.lower()
    )
    return df.rename(
        columns={orig: target for orig, target in RENAME_MAP.items() if orig in df.columns}
    )


def load_sheets_as_tables(workbook_path: str) -> dict[str, pd.DataFrame]:
    """
    Read each worksheet (or a single CSV file) into a DataFrame:
      - first row = header
      - first column = index
      - normalize all headers to snake_case lowercase
      - apply renames from RENAME_MAP
    A CSV file yields one table named after the file stem.
    """
    path = Path(workbook_path)
    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path, header=0, index_col=0)
        return {path.stem: _normalize_headers(df)}

    excel = pd.ExcelFile(path, engine="openpyxl")
    tables: dict[str, pd.DataFrame] = {}

    for sheet_name in excel.sheet_names:
        df = pd.read_excel(excel, sheet_name=sheet_name, header=0, index_col=0, engine="openpyxl")
        tables[sheet_name] = _normalize_headers(df)

    return tables
