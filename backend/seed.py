from pathlib import Path
from typing import Optional

import pandas as pd
from loguru import logger
from sqlalchemy.engine import Engine

from backend.database import engine as default_engine, init_db
from backend.models import CalcProfile, TowPartner, utcnow

SEED_DIR = Path(__file__).resolve().parent.parent / "data" / "seed"

PROFILE_DEFAULTS = {
    "night_coeff": 1.1,
    "urgent_coeff": 1.2,
    "suv_coeff": 1.08,
    "labor_rate": 400.0,
    "active": True,
}


def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [col.strip().lower() for col in df.columns]
    return df


def validate_columns(df: pd.DataFrame, required: set[str]) -> None:
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")


def apply_profile_rules(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df["code"] = df["code"].astype(str).str.strip().str.upper()
    if "name" not in df.columns:
        df["name"] = df["code"].str.title()

    for column, default in PROFILE_DEFAULTS.items():
        if column not in df.columns:
            df[column] = default
        else:
            df[column] = df[column].fillna(default)

    numeric = ["parts_coeff", "labor_coeff", "night_coeff", "urgent_coeff", "suv_coeff", "labor_rate"]
    for column in numeric:
        df[column] = pd.to_numeric(df[column], errors="coerce")
    bad_mask = (df[numeric].isna() | (df[numeric] <= 0)).any(axis=1)
    if bad_mask.any():
        logger.warning(f"Dropping {int(bad_mask.sum())} profile row(s) with missing or non-positive coefficients")
    df = df.loc[~bad_mask]

    df["active"] = df["active"].astype(str).str.lower().isin(["true", "1", "yes"])
    df = df.drop_duplicates(subset="code", keep="last").reset_index(drop=True)
    return df[["code", "name", *numeric, "active"]]


def _existing(engine: Engine, table: str, column: str) -> set:
    return set(pd.read_sql(f"SELECT {column} FROM {table}", engine)[column].tolist())


def seed_calc_profiles(engine: Engine, df: pd.DataFrame) -> int:
    df = normalize_columns(df)
    validate_columns(df, {"code", "parts_coeff", "labor_coeff"})
    df = apply_profile_rules(df)
    df = df.loc[~df["code"].isin(_existing(engine, CalcProfile.__tablename__, "code"))]
    if not df.empty:
        now = utcnow()
        df = df.assign(created_at=now, updated_at=now)
        df.to_sql(CalcProfile.__tablename__, engine, if_exists="append", index=False)
    return len(df)


def seed_tow_partners(engine: Engine, df: pd.DataFrame) -> int:
    df = normalize_columns(df)
    validate_columns(df, {"name"})
    df["name"] = df["name"].astype(str).str.strip()
    if "phone" not in df.columns:
        df["phone"] = None
    df["active"] = True
    df = df.drop_duplicates(subset="name").loc[lambda d: ~d["name"].isin(
        _existing(engine, TowPartner.__tablename__, "name"))]
    if not df.empty:
        df[["name", "phone", "active"]].to_sql(TowPartner.__tablename__, engine, if_exists="append", index=False)
    return len(df)


def main(seed_dir: Optional[Path] = None, engine: Optional[Engine] = None) -> None:
    seed_dir = seed_dir or SEED_DIR
    engine = engine or default_engine
    init_db(engine)

    profiles_csv = seed_dir / "calc_profiles.csv"
    if not profiles_csv.exists():
        raise FileNotFoundError(f"CSV not found at {profiles_csv}")
    added = seed_calc_profiles(engine, pd.read_csv(profiles_csv))
    logger.info(f"Seeded {added} calc profile(s)")

    partners_csv = seed_dir / "tow_partners.csv"
    if partners_csv.exists():
        added = seed_tow_partners(engine, pd.read_csv(partners_csv, dtype=str))
        logger.info(f"Seeded {added} tow partner(s)")


if __name__ == "__main__":
    main()
