"""
Synthetic Biobank Extract Generator

Generates a raw participant-level extract shaped like the UK Biobank export
used by the cohort pipeline (instance-suffixed column names, duplicate visit
instances, free-text illness codes) plus the separate BMI table. Values are
simulated; no real participant data is involved.
"""

import argparse
import logging
from datetime import date, timedelta
from pathlib import Path
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
from faker import Faker

logger = logging.getLogger(__name__)

RECRUITMENT_START = date(2006, 3, 13)
RECRUITMENT_END = date(2010, 10, 1)


class BiobankExtractGenerator:
    """Generate a synthetic raw biobank extract and BMI table."""

    def __init__(self, seed: int = 42, missing_value_rates: Optional[Dict[str, float]] = None):
        """Initialize the generator with a random seed and missing value configuration.

        Args:
            seed: Random seed for reproducibility
            missing_value_rates: Missing value rate per canonical field name.
        """
        self.seed = seed
        self.random = np.random.RandomState(seed)
        self.fake = Faker()
        Faker.seed(seed)

        self.missing_value_rates = missing_value_rates or {
            'smoking_status': 0.01,
            'alcohol_intake_frequency': 0.01,
            'systolic_blood_pressure': 0.03,
            'diastolic_blood_pressure': 0.03,
            'cholesterol': 0.06,
            'ldl_direct': 0.07,
            'hdl_cholesterol': 0.12,
            'glucose': 0.10,
            'townsend_deprivation_index': 0.01,
            'waist_circumference': 0.02,
        }

    def _recruitment_dates(self, n: int) -> pd.Series:
        dates = [self.fake.date_between_dates(date_start=RECRUITMENT_START, date_end=RECRUITMENT_END)
                 for _ in range(n)]
        return pd.to_datetime(pd.Series(dates))

    def _with_missing(self, values: np.ndarray, rate: float) -> np.ndarray:
        values = values.astype(float)
        values[self.random.random_sample(len(values)) < rate] = np.nan
        return values

    def generate_dataset(self, num_participants: int) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """Return (raw extract, BMI table)."""
        n = num_participants
        r = self.random
        logger.info(f"Generating synthetic extract for {n} participants")

        eid = np.arange(1_000_001, 1_000_001 + n)
        sex = (r.random_sample(n) < 0.08).astype(int)  # 0 = female
        age = r.randint(38, 72, size=n).astype(float)
        pregnant = np.where(sex == 0, r.choice([0, 1, 2], size=n, p=[0.985, 0.01, 0.005]), 0)

        # Data-field 2724: 0 no, 1 yes, 2 hysterectomy, 3 other
        post_prob = np.clip((age - 40) / 15, 0.05, 0.95)
        menopause_status = np.where(
            r.random_sample(n) < post_prob,
            r.choice([1, 2, 3], size=n, p=[0.82, 0.13, 0.05]),
            0,
        ).astype(float)
        menopause_status[r.random_sample(n) < 0.02] = np.nan

        age_at_menopause = np.where(
            menopause_status == 1,
            np.minimum(np.clip(r.normal(50, 4, size=n), 32, 65), age),
            np.nan,
        )
        age_at_menopause = self._with_missing(np.round(age_at_menopause), 0.05)

        date_recr = self._recruitment_dates(n)

        hrt_within_5yrs = r.choice([1.0, 0.0, np.nan], size=n, p=[0.3, 0.65, 0.05])
        first_offset_days = np.where(
            hrt_within_5yrs == 1,
            -r.randint(0, 5 * 365, size=n),
            -r.randint(6 * 365, 20 * 365, size=n),
        )
        # a few first prescriptions recorded after recruitment
        late = r.random_sample(n) < 0.05
        first_offset_days = np.where(late, r.randint(1, 3 * 365, size=n), first_offset_days)
        has_history = (hrt_within_5yrs == 1) | (r.random_sample(n) < 0.1)
        first_hrt = pd.Series(
            [d + timedelta(days=int(o)) if h else pd.NaT
             for d, o, h in zip(date_recr, first_offset_days, has_history)]
        )
        last_hrt = pd.Series(
            [f + timedelta(days=int(x)) if pd.notna(f) else pd.NaT
             for f, x in zip(first_hrt, r.randint(30, 6 * 365, size=n))]
        )

        smoking_status = r.choice([0, 1, 2], size=n, p=[0.58, 0.33, 0.09]).astype(float)
        alcohol = r.randint(1, 7, size=n).astype(float)
        bmi = np.clip(r.normal(27.0, 5.0, size=n), 15, 60)
        waist = 2.2 * bmi + 25 + r.normal(0, 10, size=n)
        systolic = r.normal(120 + (age - 40) * 0.6, 15)
        diastolic = 0.4 * systolic + r.normal(32, 7, size=n)
        cholesterol = r.normal(5.7, 1.1, size=n)
        ldl = 0.65 * cholesterol + r.normal(0, 0.2, size=n)
        hdl = r.normal(1.6, 0.4, size=n)
        glucose = r.normal(5.0, 0.9, size=n)
        townsend = r.normal(-1.3, 3.0, size=n)
        live_births = r.poisson(2, size=n).astype(float)

        exposed = (hrt_within_5yrs == 1) & ~late
        logit = (-2.6 + 0.05 * (age - 55) + 0.5 * (smoking_status == 2)
                 + 0.03 * (systolic - 130) + 0.3 * exposed)
        incident_case = (r.random_sample(n) < 1 / (1 + np.exp(-logit))).astype(int)
        prevalent_case = (r.random_sample(n) < 0.04).astype(int)
        incident_case = np.where(prevalent_case == 1, 0, incident_case)

        date_diagnosis = pd.Series(
            [d + timedelta(days=int(x)) if inc else (d - timedelta(days=int(x)) if prev else pd.NaT)
             for d, x, inc, prev in zip(date_recr, r.randint(200, 12 * 365, size=n),
                                        incident_case, prevalent_case)]
        )

        rates = self.missing_value_rates
        extract = pd.DataFrame({
            'eid': eid,
            'sex.0.0': sex,
            'pregnant.0.0': pregnant,
            'age_at_recruitment.0.0': age,
            'menopause_status.0.0': menopause_status,
            'age_at_menopause.0.0': age_at_menopause,
            'date_recr.0.0': date_recr.dt.strftime('%Y-%m-%d'),
            'hrt_within_5yrs': hrt_within_5yrs,
            'first_hrt_prescription': pd.to_datetime(first_hrt).dt.strftime('%Y-%m-%d'),
            'last_hrt_prescription': pd.to_datetime(last_hrt).dt.strftime('%Y-%m-%d'),
            'smoking_status.0.0': self._with_missing(smoking_status, rates.get('smoking_status', 0)),
            'alcohol_intake_frequency.0.0': self._with_missing(alcohol, rates.get('alcohol_intake_frequency', 0)),
            'systolic_blood_pressure.0.0': self._with_missing(np.round(systolic), rates.get('systolic_blood_pressure', 0)),
            'systolic_blood_pressure.0.1': np.round(systolic + r.normal(0, 5, size=n)),
            'diastolic_blood_pressure.0.0': self._with_missing(np.round(diastolic), rates.get('diastolic_blood_pressure', 0)),
            'cholesterol.0.0': self._with_missing(np.round(cholesterol, 2), rates.get('cholesterol', 0)),
            'LDL_direct.0.0': self._with_missing(np.round(ldl, 2), rates.get('ldl_direct', 0)),
            'HDL_cholesterol.0.0': self._with_missing(np.round(hdl, 2), rates.get('hdl_cholesterol', 0)),
            'glucose.0.0': self._with_missing(np.round(glucose, 2), rates.get('glucose', 0)),
            'townsend_deprivation_index.0.0': self._with_missing(np.round(townsend, 2), rates.get('townsend_deprivation_index', 0)),
            'waist_circumference.0.0': self._with_missing(np.round(waist), rates.get('waist_circumference', 0)),
            'number_of_live_births.0.0': live_births,
            'incident_case': incident_case,
            'prevalent_case': prevalent_case,
            'date_diagnosis': pd.to_datetime(date_diagnosis).dt.strftime('%Y-%m-%d'),
            # fields the pipeline discards
            'Non_cancer_illness_code.0.0': r.choice([1065, 1074, 1226, np.nan], size=n),
            'Non_cancer_illness_code.0.1': r.choice([1065, 1074, np.nan], size=n),
            'cancer_code.0.0': r.choice([1002, 1044, np.nan], size=n, p=[0.03, 0.02, 0.95]),
            'pulse_rate.0.0': np.round(r.normal(70, 10, size=n)),
            'Medication_for_pain_relief_constipation_heartburn.0.0': r.choice([-7, 1, 2], size=n),
            'Number_of_self_reported_cancers.0.0': r.poisson(0.05, size=n),
            'number_in_household.0.0': r.randint(1, 6, size=n),
            'ever_used_HRT.0.0': np.where(has_history, 1, 0),
            'Age_started_HRT.0.0': np.where(has_history, np.round(age - 5), np.nan),
            'Age_.high_blood_pressure_diagnosed.0.0': np.where(r.random_sample(n) < 0.2, np.round(age - 8), np.nan),
        })

        bmi_table = pd.DataFrame({'eid': eid, 'bmi_0_0': self._with_missing(np.round(bmi, 1), 0.02)})
        # some participants have no BMI record at all
        bmi_table = bmi_table.loc[r.random_sample(n) >= 0.02].reset_index(drop=True)

        logger.info(f"Generated extract {extract.shape} and BMI table {bmi_table.shape}")
        return extract, bmi_table

    def save(self, num_participants: int, output_dir: str) -> Tuple[Path, Path]:
        """Generate and write the extract and BMI table as CSV."""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        extract, bmi_table = self.generate_dataset(num_participants)
        extract_path = out / 'biobank_variables_eid.csv'
        bmi_path = out / 'bmi_data.csv'
        extract.to_csv(extract_path, index=False)
        bmi_table.to_csv(bmi_path, index=False)
        logger.info(f"Saved {extract_path} and {bmi_path}")
        return extract_path, bmi_path


def main():
    parser = argparse.ArgumentParser(description="Generate a synthetic biobank extract")
    parser.add_argument("--num_participants", type=int, default=27000,
                        help="Number of participants to simulate")
    parser.add_argument("--output_dir", type=str, default="./data/raw",
                        help="Output directory for the CSV files")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    generator = BiobankExtractGenerator(seed=args.seed)
    generator.save(args.num_participants, args.output_dir)


if __name__ == "__main__":
    main()
