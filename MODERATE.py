#!/usr/bin/env python3
# ==============================================================================
# MODERATE
# Predictor Selection and Treatment-Moderation Analysis for Smoking Cessation
# Trials
#
# Pipeline: schema validation -> chained-equations PMM imputation -> encoding
# -> cross-validated LASSO screen -> treatment x covariate interactions ->
# cross-validated LASSO selection -> held-out ROC/AUC evaluation.
# ==============================================================================

VERSION = "1.0.0"  # MODERATE version for audit and reproducibility

import argparse
import hashlib
import hmac
import json
import os
import platform  # For reproducibility fingerprinting
import re
import secrets
import sys
import time
import warnings
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import joblib
import numpy as np  # type: ignore
import pandas as pd
import statsmodels.api as sm  # type: ignore
from joblib import Parallel, delayed
from scipy.special import expit  # type: ignore
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import (  # type: ignore[import-untyped]
    auc,
    brier_score_loss,
    roc_auc_score,
    roc_curve,
)
from sklearn.model_selection import KFold

"""
MODERATE: LASSO predictor selection and moderator detection for a two-arm
factorial smoking cessation trial.

Academic References:
[1] van Buuren S, Groothuis-Oudshoorn K. mice: Multivariate Imputation by
    Chained Equations in R. J Stat Softw 2011;45(3):1-67.
[2] Little RJA. Missing-data adjustments in large surveys. J Bus Econ Stat
    1988;6(3):287-96. (predictive mean matching)
[3] Tibshirani R. Regression shrinkage and selection via the lasso.
    J R Stat Soc B 1996;58(1):267-88.
[4] Friedman J, Hastie T, Tibshirani R. Regularization paths for generalized
    linear models via coordinate descent. J Stat Softw 2010;33(1):1-22.
[5] Lerman C, et al. Use of the nicotine metabolite ratio as a genetically
    informed biomarker of response to nicotine patch or varenicline for
    smoking cessation. Lancet Respir Med 2015;3(2):131-8.
"""

# ---------------------------
# sklearn Version Compatibility
# ---------------------------


def check_sklearn_compatibility() -> Dict[str, Any]:
    """
    Check the installed scikit-learn for the L1 logistic regression API.

    scikit-learn 1.8 deprecated ``LogisticRegression(penalty=...)`` in favour of
    ``l1_ratio`` alone (l1_ratio=1.0 is a pure L1 penalty). Earlier releases
    select the pure L1 penalty with ``penalty="l1"``.

    Returns:
        Dictionary with version info and compatibility flags
    """
    import sklearn as _sk
    from packaging import version

    sklearn_version = _sk.__version__
    parsed = version.parse(sklearn_version)
    major, minor = parsed.major, parsed.minor

    compatibility = {
        "sklearn_version": sklearn_version,
        "major": major,
        "minor": minor,
        "penalty_param_deprecated": (major, minor) >= (1, 8),
        "warnings": [],
    }

    if (major, minor) < (1, 3):
        compatibility["warnings"].append(
            f"sklearn {sklearn_version} is old; 1.3+ is required for the L1 logistic path"
        )

    return compatibility


# Cache the compatibility check
_SKLEARN_COMPAT = check_sklearn_compatibility()

# ---------------------------
# Defaults
# ---------------------------

RANDOM_STATE = 42
OUTPUT_ROOT_DEFAULT = "MODERATE_OUTPUT"

# Imputation (mice defaults)
IMPUTATION_METHODS = ("pmm", "sample")
IMPUTATION_METHOD_DEFAULT = "pmm"
N_IMPUTATIONS = 5
MICE_MAX_ITER = 50
PMM_DONORS = 5

# LASSO (glmnet defaults)
CV_FOLDS = 10
N_LAMBDAS = 50
LAMBDA_MIN_RATIO_SMALL_N = 0.01  # n < p
LAMBDA_MIN_RATIO = 1e-4  # n >= p
CV_LOSSES = ("deviance", "auc")
LAMBDA_RULES = ("min", "1se")
L1_RATIO = 1.0  # Pure L1 (glmnet alpha = 1)
COEF_ZERO_TOL = 1e-8
SOLVER_MAX_ITER = 5000
SOLVER_TOL = 1e-5
INTERCEPT_SCALING = 100.0  # liblinear penalizes the intercept column; weight divided by this
PROB_EPS = 1e-15

# Evaluation
TRAIN_FRACTION = 0.8
BOOTSTRAP_AUC_N = 1000
BOOTSTRAP_MIN_N = 50

# Encoding
UNSEEN_LEVEL_POLICIES = ("error", "zero")

# Missingness thresholds for imputation quality warnings
MISSINGNESS_WARN_THRESHOLD = 0.30
MISSINGNESS_CRITICAL_THRESHOLD = 0.50
MISSINGNESS_VARIABLE_THRESHOLD = 0.40

_CPU_COUNT = os.cpu_count() or 4
SMART_N_JOBS = max(1, _CPU_COUNT - 2)  # Leave 2 cores free for OS/user

# ---------------------------
# Errors
# ---------------------------


class FieldError(Exception):
    """Base for errors tied to one named dataset field."""

    def __init__(self, field_name: str, message: str):
        super().__init__(message)
        self.field = field_name

    def __reduce__(self):
        # Keep the field when errors cross joblib worker boundaries
        return (self.__class__, (self.field, str(self)))


class SchemaError(FieldError, ValueError):
    """Input is missing a required field or contradicts its declared type."""


class ImputationError(FieldError, RuntimeError):
    """A field with missing values cannot be imputed."""


class EncodingMismatchError(FieldError, ValueError):
    """A categorical level was not part of the fitted encoding."""


class SelectionError(RuntimeError):
    """Cross-validated LASSO selection cannot be carried out."""


class PipelineFailed(RuntimeError):
    """Raised by ``PipelineContext.raise_for_failure`` for a failed run."""

    def __init__(self, stage: "Stage", error: BaseException):
        super().__init__(f"pipeline failed at stage {stage.value}: {error}")
        self.stage = stage
        self.error = error


# ---------------------------
# Utilities
# ---------------------------


def now_ts() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")


def safe_name(s: str) -> str:
    s = re.sub(r"[^a-zA-Z0-9._-]+", "_", str(s)).strip("_")
    return s[:120] if s else "dataset"


def derive_seed(seed: int, stream: str) -> int:
    """Derive an independent, reproducible child seed for one named stream."""
    key = int.from_bytes(hashlib.sha256(stream.encode("utf-8")).digest()[:4], "little")
    seq = np.random.SeedSequence(entropy=int(seed), spawn_key=(key,))
    return int(seq.generate_state(1)[0])


SUPPORTED_EXTENSIONS = {".csv", ".tsv", ".txt", ".xlsx", ".xls"}


def sniff_sep(path: Path) -> str:
    """Auto-detect delimiter for text-based tabular files."""
    with open(path, "r", errors="ignore") as f:
        head = f.readline()
    if "\t" in head and "," not in head:
        return "\t"
    if ";" in head and "," not in head:
        return ";"
    return ","


def sha256_file(path: Path, max_mb: int = 50) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        remaining = max_mb * 1024 * 1024
        while remaining > 0:
            chunk = f.read(min(1024 * 1024, remaining))
            if not chunk:
                break
            h.update(chunk)
            remaining -= len(chunk)
    return h.hexdigest()


def smart_read_file(path: Path, audit: Optional["AuditLog"] = None) -> pd.DataFrame:
    """
    Read a trial export (CSV, TSV, TXT or Excel) into a DataFrame.

    Parsing is deliberately thin: typing and validation happen against the
    declared schema in ``validate_dataset``.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_EXTENSIONS:
        raise ValueError(
            f"Unsupported file type '{suffix}'. Supported: {sorted(SUPPORTED_EXTENSIONS)}"
        )

    if suffix in {".xlsx", ".xls"}:
        df = pd.read_excel(path)
        sep = None
    else:
        sep = sniff_sep(path)
        df = pd.read_csv(path, sep=sep, na_values=["", "NA", "N/A", "NULL", "."])

    if audit:
        audit.log(
            "FILE_READ",
            {
                "path": str(path),
                "sha256": sha256_file(path),
                "sep": sep,
                "rows": int(len(df)),
                "cols": int(df.shape[1]),
            },
        )
    return df


def _finite_or_none(value: float) -> Optional[float]:
    """JSON has no NaN; undefined metrics are written as null."""
    value = float(value)
    return value if np.isfinite(value) else None


def _json_default(obj: Any) -> Any:
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (Path, Enum)):
        return str(obj.value if isinstance(obj, Enum) else obj)
    if isinstance(obj, pd.DataFrame):
        return obj.to_dict(orient="records")
    return str(obj)


def write_csv(path: Path, df: pd.DataFrame, index: bool = False):
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=index)


def write_json(path: Path, obj: Dict[str, Any]):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False, default=_json_default)


def get_versions() -> Dict[str, str]:
    import scipy as _sp
    import sklearn as _sk
    import statsmodels as _sm

    return {
        "moderate": VERSION,
        "python": sys.version.replace("\n", " "),
        "numpy": np.__version__,
        "pandas": pd.__version__,
        "scipy": _sp.__version__,
        "sklearn": _sk.__version__,
        "statsmodels": _sm.__version__,
        "joblib": joblib.__version__,
        # Hardware/OS fingerprint for reproducibility
        "os_system": platform.system(),
        "os_release": platform.release(),
        "machine": platform.machine(),
        "cpu_count": str(os.cpu_count() or "unknown"),
    }


# ---------------------------
# Immutable audit log (JSONL)
# ---------------------------


class AuditLog:
    """
    Append-only JSONL audit trail for one analysis session.

    Every entry carries the session verification key and a sequence number.
    ``finalize_session`` seals the session with an HMAC-SHA256 over all
    entries, keyed by a per-session secret that is never written to disk, so
    any later edit of the log invalidates the seal.
    """

    def __init__(self, jsonl_path: Path):
        self.jsonl_path = Path(jsonl_path)
        self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)

        self._session_secret = secrets.token_bytes(32)
        self.verification_key = (
            hashlib.sha256(self._session_secret).hexdigest()[:16].upper()
        )
        self.session_start = now_ts()
        self.log_count = 0
        self._entries: List[Dict[str, Any]] = []

        self._write_entry(
            "SESSION_INIT",
            {
                "verification_key": self.verification_key,
                "session_start": self.session_start,
                "moderate_version": VERSION,
            },
        )

    def _write_entry(self, event: str, details: Optional[Dict[str, Any]] = None):
        self.log_count += 1
        entry = {
            "ts": now_ts(),
            "event": event,
            "details": details or {},
            "verification_key": self.verification_key,
            "log_sequence": self.log_count,
        }
        line = json.dumps(entry, ensure_ascii=False, default=_json_default)
        # Cache the serialized form so the seal covers exactly what was written
        self._entries.append(json.loads(line))

        with open(self.jsonl_path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
        return entry

    def log(self, event: str, details: Optional[Dict[str, Any]] = None):
        """Log an event with full audit trail."""
        return self._write_entry(event, details)

    def integrity_hash(self) -> str:
        serialized = json.dumps(self._entries, sort_keys=True, ensure_ascii=False)
        return (
            hmac.new(self._session_secret, serialized.encode("utf-8"), hashlib.sha256)
            .hexdigest()
            .upper()
        )

    def finalize_session(self) -> Dict[str, Any]:
        """Seal the session and return its summary."""
        integrity_hash = self.integrity_hash()
        summary = {
            "verification_key": self.verification_key,
            "session_start": self.session_start,
            "session_end": now_ts(),
            "total_entries": self.log_count,
            "integrity_hash": integrity_hash,
            "integrity_algorithm": "HMAC-SHA256",
        }
        self._write_entry(
            "SESSION_FINALIZED",
            {"integrity_hash": integrity_hash, "total_entries": self.log_count},
        )
        return summary

    def get_verification_key(self) -> str:
        return self.verification_key


def _audit(audit: Optional[AuditLog], event: str, details: Dict[str, Any]):
    if audit is not None:
        audit.log(event, details)


# ---------------------------
# Configuration
# ---------------------------


@dataclass(frozen=True)
class PipelineConfig:
    """
    Every knob of a run, with no hidden defaults.

    Stage seeds (``imputation_seed``, ``cv_seed``, ``split_seed``) default to
    children of ``seed`` so one number reproduces the whole run; set them
    explicitly to pin a single stage.
    """

    imputation_method: str = IMPUTATION_METHOD_DEFAULT
    n_imputations: int = N_IMPUTATIONS
    max_iter: int = MICE_MAX_ITER
    n_donors: int = PMM_DONORS
    analysis_draw: int = 0
    seed: int = RANDOM_STATE
    imputation_seed: Optional[int] = None
    cv_seed: Optional[int] = None
    split_seed: Optional[int] = None
    n_folds: int = CV_FOLDS
    n_lambdas: int = N_LAMBDAS
    lambda_min_ratio: Optional[float] = None
    cv_loss: str = "deviance"
    lambda_rule: str = "min"
    l1_ratio: float = L1_RATIO
    zero_tol: float = COEF_ZERO_TOL
    solver_max_iter: int = SOLVER_MAX_ITER
    solver_tol: float = SOLVER_TOL
    train_fraction: float = TRAIN_FRACTION
    unseen_levels: str = "error"
    n_jobs: int = 1

    def __post_init__(self):
        if self.imputation_method not in IMPUTATION_METHODS:
            raise ValueError(
                f"imputation_method must be one of {IMPUTATION_METHODS}, got {self.imputation_method!r}"
            )
        if self.n_imputations < 1:
            raise ValueError("n_imputations must be >= 1")
        if self.max_iter < 1:
            raise ValueError("max_iter must be >= 1")
        if self.n_donors < 1:
            raise ValueError("n_donors must be >= 1")
        if not 0 <= self.analysis_draw < self.n_imputations:
            raise ValueError(
                f"analysis_draw must index one of the {self.n_imputations} imputations"
            )
        if self.n_folds < 2:
            raise ValueError("n_folds must be >= 2")
        if self.n_lambdas < 2:
            raise ValueError("n_lambdas must be >= 2")
        if self.lambda_min_ratio is not None and not 0 < self.lambda_min_ratio < 1:
            raise ValueError("lambda_min_ratio must lie in (0, 1)")
        if self.cv_loss not in CV_LOSSES:
            raise ValueError(f"cv_loss must be one of {CV_LOSSES}")
        if self.lambda_rule not in LAMBDA_RULES:
            raise ValueError(f"lambda_rule must be one of {LAMBDA_RULES}")
        if self.l1_ratio != L1_RATIO:
            raise ValueError("l1_ratio is fixed at 1.0 (pure L1 penalty)")
        if not 0 < self.train_fraction < 1:
            raise ValueError("train_fraction must lie in (0, 1)")
        if self.unseen_levels not in UNSEEN_LEVEL_POLICIES:
            raise ValueError(f"unseen_levels must be one of {UNSEEN_LEVEL_POLICIES}")
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be non-zero")

    def stage_seed(self, stage: str) -> int:
        explicit = {
            "imputation": self.imputation_seed,
            "cv": self.cv_seed,
            "split": self.split_seed,
        }[stage]
        return int(explicit) if explicit is not None else derive_seed(self.seed, stage)

    @classmethod
    def from_session_config(
        cls, session_config: Optional[Mapping[str, Any]] = None
    ) -> "PipelineConfig":
        """
        Build a config from a session mapping.

        Environment variables:
            MODERATE_SEED=<int>     - master seed
            MODERATE_N_JOBS=<int>   - worker count for folds and draws

        Keys present in ``session_config`` win over the environment.
        """
        known = {f.name for f in cls.__dataclass_fields__.values()}
        values: Dict[str, Any] = {}
        if os.environ.get("MODERATE_SEED"):
            values["seed"] = int(os.environ["MODERATE_SEED"])
        if os.environ.get("MODERATE_N_JOBS"):
            values["n_jobs"] = int(os.environ["MODERATE_N_JOBS"])

        for key, value in (session_config or {}).items():
            if key not in known:
                raise ValueError(f"Unknown configuration option: {key!r}")
            if value is not None:
                values[key] = value
        return cls(**values)


# ---------------------------
# Schema & Dataset
# ---------------------------

CONTINUOUS = "continuous"
BINARY = "binary"
ORDINAL = "ordinal"
FIELD_TYPES = (CONTINUOUS, BINARY, ORDINAL)


def _level_label(level: Any) -> str:
    if isinstance(level, (float, np.floating)) and float(level).is_integer():
        return str(int(level))
    return str(level)


def dummy_name(field_name: str, level: Any) -> str:
    return f"{field_name}_{_level_label(level)}"


def interaction_name(treatment: str, covariate: str) -> str:
    return f"{treatment}:{covariate}"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: str
    levels: Tuple[Any, ...] = ()
    label: str = ""

    def __post_init__(self):
        if self.kind not in FIELD_TYPES:
            raise ValueError(f"Field '{self.name}': type must be one of {FIELD_TYPES}")
        object.__setattr__(self, "levels", tuple(self.levels))
        if self.kind == ORDINAL:
            if len(self.levels) < 2:
                raise ValueError(f"Ordinal field '{self.name}' needs at least 2 levels")
            if len({str(level) for level in self.levels}) != len(self.levels):
                raise ValueError(f"Ordinal field '{self.name}' has duplicate levels")
        elif self.levels:
            raise ValueError(f"Only ordinal fields declare levels ('{self.name}')")


@dataclass(frozen=True)
class TrialSchema:
    """
    Fixed column contract: one binary outcome, two binary treatment
    indicators, and typed baseline covariates. Ordinal level order is the
    canonical order used by every encoding.
    """

    outcome: str
    treatments: Tuple[str, ...]
    baseline: Tuple[FieldSpec, ...]

    def __post_init__(self):
        object.__setattr__(self, "treatments", tuple(self.treatments))
        object.__setattr__(self, "baseline", tuple(self.baseline))
        if len(self.treatments) != 2 or self.treatments[0] == self.treatments[1]:
            raise ValueError("Schema needs exactly two distinct treatment indicators")
        if not self.baseline:
            raise ValueError("Schema needs at least one baseline field")
        names = self.required_fields
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate field names in schema: {dupes}")
        self._check_generated_columns()

    def _check_generated_columns(self):
        """Every encoded and interaction column name must be unique."""
        owners: Dict[str, str] = {self.outcome: self.outcome}
        generated: List[Tuple[str, str]] = [(t, t) for t in self.treatments]
        generated += [(c, f.name) for f in self.baseline for c in self._encoded_names(f)]
        generated += [
            (interaction_name(t, c), owner) for t in self.treatments for c, owner in generated[2:]
        ]
        for column, owner in generated:
            if column in owners:
                raise SchemaError(
                    owner,
                    f"Column '{column}' generated for field '{owner}' collides with "
                    f"a column of field '{owners[column]}'",
                )
            owners[column] = owner

    @staticmethod
    def _encoded_names(spec: FieldSpec) -> Tuple[str, ...]:
        if spec.kind == ORDINAL:
            return tuple(dummy_name(spec.name, level) for level in spec.levels[1:])
        return (spec.name,)

    @property
    def encoded_columns(self) -> Tuple[str, ...]:
        """Treatments, then encoded baseline columns in schema order."""
        return self.treatments + tuple(c for f in self.baseline for c in self._encoded_names(f))

    @property
    def baseline_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.baseline)

    @property
    def required_fields(self) -> Tuple[str, ...]:
        return (self.outcome,) + self.treatments + self.baseline_names

    def field(self, name: str) -> FieldSpec:
        for spec in self.baseline:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def names_of(self, kind: str) -> Tuple[str, ...]:
        return tuple(f.name for f in self.baseline if f.kind == kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "treatments": list(self.treatments),
            "baseline": [
                {
                    "name": f.name,
                    "type": f.kind,
                    **({"levels": list(f.levels)} if f.levels else {}),
                    **({"label": f.label} if f.label else {}),
                }
                for f in self.baseline
            ],
        }


def schema_from_dict(obj: Mapping[str, Any]) -> TrialSchema:
    try:
        baseline = tuple(
            FieldSpec(
                name=str(item["name"]),
                kind=str(item["type"]),
                levels=tuple(item.get("levels", ())),
                label=str(item.get("label", "")),
            )
            for item in obj["baseline"]
        )
        return TrialSchema(
            outcome=str(obj["outcome"]),
            treatments=tuple(obj["treatments"]),
            baseline=baseline,
        )
    except KeyError as e:
        raise ValueError(f"Schema definition is missing key {e}") from e


def load_schema(path: Path) -> TrialSchema:
    """Load a schema from JSON: {"outcome", "treatments", "baseline": [...]}."""
    with open(path, "r", encoding="utf-8") as f:
        return schema_from_dict(json.load(f))


SMOKING_TRIAL_SCHEMA = TrialSchema(
    outcome="abst",
    treatments=("Var", "BA"),
    baseline=(
        FieldSpec("age_ps", CONTINUOUS, label="Age at phone screen"),
        FieldSpec("sex_ps", BINARY, label="Sex"),
        FieldSpec("NHW", BINARY, label="Non-Hispanic White"),
        FieldSpec("Black", BINARY, label="Black"),
        FieldSpec("Hisp", BINARY, label="Hispanic"),
        FieldSpec("inc", ORDINAL, levels=(1, 2, 3, 4, 5), label="Income band"),
        FieldSpec("edu", ORDINAL, levels=(1, 2, 3, 4, 5), label="Education band"),
        FieldSpec("ftcd_score", CONTINUOUS, label="FTCD score"),
        FieldSpec("ftcd.5.mins", BINARY, label="Smokes within 5 min of waking"),
        FieldSpec("bdi_score_w00", CONTINUOUS, label="BDI score at baseline"),
        FieldSpec("cpd_ps", CONTINUOUS, label="Cigarettes per day"),
        FieldSpec("crv_total_pq1", CONTINUOUS, label="Cigarette craving"),
        FieldSpec("hedonsum_n_pq1", CONTINUOUS, label="Pleasurable events (no substance)"),
        FieldSpec("hedonsum_y_pq1", CONTINUOUS, label="Pleasurable events (substance)"),
        FieldSpec("shaps_score_pq1", CONTINUOUS, label="Anhedonia (SHAPS)"),
        FieldSpec("otherdiag", BINARY, label="Other lifetime DSM-5 diagnosis"),
        FieldSpec("antidepmed", BINARY, label="Taking antidepressant medication"),
        FieldSpec("mde_curr", BINARY, label="Current major depressive episode"),
        FieldSpec("NMR", CONTINUOUS, label="Nicotine metabolism ratio"),
        FieldSpec("Only.Menthol", BINARY, label="Exclusively menthol user"),
        FieldSpec("readiness", CONTINUOUS, label="Readiness to quit"),
    ),
)


@dataclass(frozen=True, eq=False)
class Dataset:
    """A schema-validated trial table. Ordinal fields are ordered categoricals."""

    frame: pd.DataFrame
    schema: TrialSchema
    warnings: Tuple[str, ...] = ()

    @property
    def n_rows(self) -> int:
        return int(len(self.frame))


@dataclass(frozen=True, eq=False)
class CompletedDataset:
    """A Dataset with no missing values, produced by one imputation draw."""

    frame: pd.DataFrame
    schema: TrialSchema
    draw: int = 0
    imputed_fields: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def n_rows(self) -> int:
        return int(len(self.frame))

    @property
    def outcome(self) -> pd.Series:
        return self.frame[self.schema.outcome]

    def take(self, positions: Sequence[int]) -> "CompletedDataset":
        """Row subset by position; the original row labels are kept."""
        return replace(self, frame=self.frame.iloc[np.asarray(positions)].copy())


def _level_codes(values: pd.Series, levels: Sequence[Any]) -> np.ndarray:
    """
    Map values onto canonical level positions.

    Returns an int array: level index, -1 for missing, -2 for a value that is
    not one of ``levels``. Numeric levels match numerically (2 == 2.0).
    """
    if isinstance(values.dtype, pd.CategoricalDtype):
        values = values.astype(object)
    present = values.notna().to_numpy()
    numeric_levels = all(
        isinstance(level, (int, float, np.integer, np.floating))
        and not isinstance(level, bool)
        for level in levels
    )
    if numeric_levels:
        keys = pd.to_numeric(values, errors="coerce").astype(float)
        lookup = {float(level): k for k, level in enumerate(levels)}
    else:
        keys = values.astype(str)
        lookup = {str(level): k for k, level in enumerate(levels)}
    mapped = keys.map(lookup).fillna(-2).to_numpy()
    return np.where(present, mapped, -1).astype(int)


def _coerce_numeric(series: pd.Series, name: str, kind: str) -> pd.Series:
    num = pd.to_numeric(series, errors="coerce")
    bad = num.isna() & series.notna()
    if bad.any():
        examples = sorted({str(v) for v in series[bad].unique()})[:5]
        raise SchemaError(
            name, f"Field '{name}' is declared {kind} but holds non-numeric values {examples}"
        )
    return num.astype(float)


def _coerce_binary(series: pd.Series, name: str, allow_missing: bool) -> pd.Series:
    num = _coerce_numeric(series, name, BINARY)
    bad = num.notna() & ~num.isin([0.0, 1.0])
    if bad.any():
        examples = sorted({str(v) for v in series[bad].unique()})[:5]
        raise SchemaError(
            name, f"Field '{name}' is declared binary but holds values {examples} outside {{0, 1}}"
        )
    if not allow_missing and num.isna().any():
        raise SchemaError(
            name, f"Field '{name}' has {int(num.isna().sum())} missing values; it must be fully observed"
        )
    return num


def _coerce_ordinal(series: pd.Series, spec: FieldSpec) -> pd.Series:
    codes = _level_codes(series, spec.levels)
    bad = codes == -2
    if bad.any():
        examples = sorted({str(v) for v in series[bad].unique()})[:5]
        raise SchemaError(
            spec.name,
            f"Field '{spec.name}' holds undeclared levels {examples}; declared levels are {list(spec.levels)}",
        )
    cat = pd.Categorical.from_codes(codes, categories=list(spec.levels), ordered=True)
    return pd.Series(cat, index=series.index, name=spec.name)


def validate_dataset(
    df: pd.DataFrame, schema: TrialSchema, audit: Optional[AuditLog] = None
) -> Dataset:
    """
    Check a raw table against the schema and return a typed Dataset.

    Fails fast with SchemaError naming the first offending field. Treatment
    indicators must be fully observed; the outcome and baseline fields may
    have missing values. Columns outside the schema are dropped.
    """
    missing = [c for c in schema.required_fields if c not in df.columns]
    if missing:
        raise SchemaError(
            missing[0], f"Required field(s) missing from dataset: {missing}"
        )

    df = df.reset_index(drop=True)
    cols: Dict[str, pd.Series] = {}
    cols[schema.outcome] = _coerce_binary(df[schema.outcome], schema.outcome, True)
    for name in schema.treatments:
        cols[name] = _coerce_binary(df[name], name, False).astype(int)
    for spec in schema.baseline:
        if spec.kind == CONTINUOUS:
            cols[spec.name] = _coerce_numeric(df[spec.name], spec.name, CONTINUOUS)
        elif spec.kind == BINARY:
            cols[spec.name] = _coerce_binary(df[spec.name], spec.name, True)
        else:
            cols[spec.name] = _coerce_ordinal(df[spec.name], spec)

    frame = pd.DataFrame(cols, index=df.index)
    notes: List[str] = []
    extra = [c for c in df.columns if c not in schema.required_fields]
    if extra:
        notes.append(f"Ignored {len(extra)} column(s) outside the schema: {extra}")

    _audit(
        audit,
        "DATASET_VALIDATED",
        {
            "rows": int(len(frame)),
            "fields": len(schema.required_fields),
            "ignored_columns": extra,
        },
    )
    return Dataset(frame=frame, schema=schema, warnings=tuple(notes))


def missingness_mask(dataset: Dataset) -> pd.DataFrame:
    """Boolean mask of originally-absent entries (outcome + baseline)."""
    schema = dataset.schema
    return dataset.frame[[schema.outcome, *schema.baseline_names]].isnull()


def missingness_by_variable(dataset: Dataset) -> pd.DataFrame:
    frame = dataset.frame
    schema = dataset.schema
    kinds = {f.name: f.kind for f in schema.baseline}
    kinds[schema.outcome] = "outcome"
    for t in schema.treatments:
        kinds[t] = "treatment"
    names = list(schema.required_fields)
    return (
        pd.DataFrame(
            {
                "variable": names,
                "n_missing": [int(frame[c].isnull().sum()) for c in names],
                "pct_missing": [float(frame[c].isnull().mean() * 100) for c in names],
                "type": [kinds[c] for c in names],
            }
        )
        .sort_values("pct_missing", ascending=False, kind="stable")
        .reset_index(drop=True)
    )


def assess_missingness_risk(
    dataset: Dataset, audit: Optional[AuditLog] = None
) -> Dict[str, Any]:
    """
    Grade baseline missingness before imputation.

    High missingness (>50%) can introduce substantial bias even with MICE.

    Reference:
    - Sterne JA, et al. Multiple imputation for missing data in
      epidemiological and clinical research. BMJ 2009;338:b2393.
    """
    frame = dataset.frame[list(dataset.schema.baseline_names)]
    total_cells = frame.size
    missing_cells = int(frame.isnull().sum().sum())
    overall_pct = (missing_cells / total_cells) * 100 if total_cells else 0.0

    var_pct = frame.isnull().mean() * 100
    high = var_pct[var_pct > MISSINGNESS_VARIABLE_THRESHOLD * 100].sort_values(
        ascending=False
    )

    if overall_pct > MISSINGNESS_CRITICAL_THRESHOLD * 100:
        risk_level = "CRITICAL"
    elif overall_pct > MISSINGNESS_WARN_THRESHOLD * 100 or len(high):
        risk_level = "WARNING"
    else:
        risk_level = "LOW"

    result = {
        "overall_missing_pct": float(overall_pct),
        "n_missing_cells": missing_cells,
        "risk_level": risk_level,
        "high_missing_variables": {c: float(p) for c, p in high.items()},
    }
    _audit(audit, "MISSINGNESS_ASSESSMENT", result)
    return result


def correlation_matrix(completed: CompletedDataset) -> pd.DataFrame:
    """Pearson correlations among continuous baseline fields and the outcome."""
    schema = completed.schema
    cols = list(schema.names_of(CONTINUOUS)) + [schema.outcome]
    corr = completed.frame[cols].astype(float).corr()
    corr.index.name = "feature"
    return corr


# ---------------------------
# Imputation Engine (MICE / predictive mean matching)
# ---------------------------
#
# Fields are visited in schema order each iteration, each conditioned on the
# current values of all others. With no convergence check, a field visited
# early in an iteration is imputed from values of later fields that are one
# iteration stale; a large fixed maxit makes that lag immaterial.


def _field_kinds(schema: TrialSchema) -> Dict[str, str]:
    kinds = {f.name: f.kind for f in schema.baseline}
    kinds[schema.outcome] = BINARY
    for t in schema.treatments:
        kinds[t] = BINARY
    return kinds


def _working_columns(dataset: Dataset, names: Sequence[str]) -> Dict[str, np.ndarray]:
    """Float working copies; ordinal fields as level codes, NaN where missing."""
    kinds = _field_kinds(dataset.schema)
    out: Dict[str, np.ndarray] = {}
    for name in names:
        col = dataset.frame[name]
        if kinds[name] == ORDINAL:
            codes = col.cat.codes.to_numpy().astype(float)
            codes[codes < 0] = np.nan
            out[name] = codes
        else:
            out[name] = col.to_numpy(dtype=float).copy()
    return out


def _predictor_matrix(
    work: Dict[str, np.ndarray],
    names: Sequence[str],
    kinds: Dict[str, str],
    n_levels: Dict[str, int],
) -> np.ndarray:
    blocks = []
    for name in names:
        col = work[name]
        if kinds[name] == ORDINAL:
            # Dummy indicators, first level as reference
            blocks.append(np.eye(n_levels[name])[col.astype(int)][:, 1:])
        else:
            blocks.append(col[:, None])
    return np.hstack(blocks)


def _pmm_draw(
    X_obs: np.ndarray,
    y_obs: np.ndarray,
    X_mis: np.ndarray,
    rng: np.random.Generator,
    n_donors: int,
) -> np.ndarray:
    """
    Predictive mean matching with a Bayesian linear regression draw.

    Observed rows are predicted with the OLS estimate, missing rows with
    coefficients drawn from their approximate posterior; each missing entry
    takes the observed value of a random donor among the ``n_donors`` closest
    observed predictions.
    """
    X_obs = np.column_stack([np.ones(len(X_obs)), X_obs])
    X_mis = np.column_stack([np.ones(len(X_mis)), X_mis])

    fit = sm.OLS(y_obs, X_obs).fit()
    df_resid = max(float(fit.df_resid), 1.0)
    sigma_star = np.sqrt(max(float(fit.ssr), 0.0) / rng.chisquare(df_resid))
    beta_star = rng.multivariate_normal(
        fit.params, fit.normalized_cov_params * sigma_star**2, check_valid="ignore"
    )

    yhat_obs = X_obs @ fit.params
    yhat_mis = X_mis @ beta_star
    k = min(n_donors, len(y_obs))

    imputed = np.empty(len(yhat_mis))
    for i, target in enumerate(yhat_mis):
        donors = np.argsort(np.abs(yhat_obs - target), kind="stable")[:k]
        imputed[i] = y_obs[rng.choice(donors)]
    return imputed


def _check_imputable(
    dataset: Dataset,
    targets: Sequence[str],
    predictors: Sequence[str],
    method: str,
):
    frame = dataset.frame
    for name in targets:
        miss = frame[name].isnull()
        if miss.all():
            raise ImputationError(name, f"Field '{name}' has no observed values to impute from")
        if method != "pmm":
            continue
        others = [p for p in predictors if p != name]
        if not others:
            raise ImputationError(name, f"Field '{name}' has no other fields to predict it from")
        orphaned = frame.loc[miss, others].isnull().all(axis=1)
        if orphaned.any():
            raise ImputationError(
                name,
                f"Field '{name}': {int(orphaned.sum())} row(s) have every predictor field missing too",
            )


def _impute_single_draw(
    dataset: Dataset,
    targets: Sequence[str],
    predictors: Sequence[str],
    method: str,
    max_iter: int,
    n_donors: int,
    seed: int,
    draw: int,
) -> CompletedDataset:
    schema = dataset.schema
    kinds = _field_kinds(schema)
    n_levels = {f.name: len(f.levels) for f in schema.baseline if f.kind == ORDINAL}
    rng = np.random.default_rng(seed)

    work = _working_columns(dataset, sorted(set(targets) | set(predictors)))
    mask = {name: np.isnan(work[name]) for name in targets}

    # Start from random draws of the observed values
    for name in targets:
        miss = mask[name]
        work[name][miss] = rng.choice(work[name][~miss], size=int(miss.sum()))

    for _ in range(max_iter):
        for name in targets:
            miss = mask[name]
            y_obs = work[name][~miss]
            if method == "sample":
                work[name][miss] = rng.choice(y_obs, size=int(miss.sum()))
                continue

            others = [p for p in predictors if p != name]
            X = _predictor_matrix(work, others, kinds, n_levels)
            usable = np.ptp(X[~miss], axis=0) > 0
            if not usable.any():
                raise ImputationError(
                    name,
                    f"Field '{name}' has no usable predictors: every other field is constant where it is observed",
                )
            X = X[:, usable]
            work[name][miss] = _pmm_draw(X[~miss], y_obs, X[miss], rng, n_donors)

    frame = dataset.frame.copy()
    for name in targets:
        if kinds[name] == ORDINAL:
            levels = list(schema.field(name).levels)
            cat = pd.Categorical.from_codes(
                work[name].astype(int), categories=levels, ordered=True
            )
            frame[name] = pd.Series(cat, index=frame.index)
        else:
            frame[name] = work[name]

    notes: List[str] = []
    unlabeled = frame[schema.outcome].isnull()
    if unlabeled.any():
        notes.append(
            f"Excluded {int(unlabeled.sum())} row(s) with missing outcome '{schema.outcome}' after imputation"
        )
        frame = frame.loc[~unlabeled].copy()
    frame[schema.outcome] = frame[schema.outcome].astype(int)

    return CompletedDataset(
        frame=frame,
        schema=schema,
        draw=draw,
        imputed_fields=tuple(targets),
        warnings=tuple(notes),
    )


def impute_dataset(
    dataset: Dataset,
    *,
    method: str = IMPUTATION_METHOD_DEFAULT,
    n_imputations: int = N_IMPUTATIONS,
    max_iter: int = MICE_MAX_ITER,
    n_donors: int = PMM_DONORS,
    seed: int = RANDOM_STATE,
    predictors: Optional[Sequence[str]] = None,
    n_jobs: int = 1,
    audit: Optional[AuditLog] = None,
) -> List[CompletedDataset]:
    """
    Multiple imputation by chained equations.

    Args:
        dataset: Validated Dataset, possibly with missing baseline values
        method: "pmm" (predictive mean matching) or "sample" (random observed value)
        n_imputations: Number of completed datasets (m)
        max_iter: Gibbs iterations per draw (maxit)
        n_donors: Donor pool size for predictive mean matching
        seed: Seed controlling initial fills, posterior draws and donor choice
        predictors: Fields allowed as predictors (default: all baseline fields,
            both treatments, and the outcome when it is fully observed)
        n_jobs: joblib workers across draws; results do not depend on it
        audit: Optional AuditLog instance

    Returns:
        One CompletedDataset per draw. Rows with a missing outcome are dropped
        from every draw after imputation.
    """
    if method not in IMPUTATION_METHODS:
        raise ValueError(f"Unknown imputation method: {method!r}")
    schema = dataset.schema
    frame = dataset.frame

    targets = [n for n in schema.baseline_names if frame[n].isnull().any()]
    if predictors is None:
        predictors = list(schema.baseline_names) + list(schema.treatments)
        if frame[schema.outcome].notna().all():
            predictors.append(schema.outcome)
    else:
        unknown = [p for p in predictors if p not in schema.required_fields]
        if unknown:
            raise ValueError(f"Unknown predictor field(s): {unknown}")
        if schema.outcome in predictors and frame[schema.outcome].isnull().any():
            raise ImputationError(
                schema.outcome,
                f"Outcome '{schema.outcome}' has missing values and cannot be a predictor",
            )
        predictors = list(predictors)

    _check_imputable(dataset, targets, predictors, method)

    seeds = [derive_seed(seed, f"draw-{d}") for d in range(n_imputations)]
    draws = Parallel(n_jobs=n_jobs)(
        delayed(_impute_single_draw)(
            dataset, targets, predictors, method, max_iter, n_donors, seeds[d], d
        )
        for d in range(n_imputations)
    )

    _audit(
        audit,
        "IMPUTATION_DONE",
        {
            "method": method,
            "m": n_imputations,
            "maxit": max_iter,
            "donors": n_donors,
            "seed": seed,
            "imputed_fields": targets,
            "predictors": predictors,
            "rows_out": draws[0].n_rows if draws else 0,
        },
    )
    return list(draws)


def imputation_diagnostics(
    draws: Sequence[CompletedDataset], dataset: Dataset
) -> pd.DataFrame:
    """Observed vs imputed mean/SD for each imputed numeric field and draw."""
    rows = []
    frame = dataset.frame
    for completed in draws:
        for name in completed.imputed_fields:
            if completed.schema.field(name).kind == ORDINAL:
                continue
            miss = frame[name].isnull()
            miss = miss[miss].index.intersection(completed.frame.index)
            observed = frame[name].dropna().astype(float)
            imputed = completed.frame.loc[miss, name].astype(float)
            rows.append(
                {
                    "variable": name,
                    "draw": completed.draw,
                    "n_imputed": int(len(imputed)),
                    "observed_mean": float(observed.mean()),
                    "observed_sd": float(observed.std()),
                    "imputed_mean": float(imputed.mean()) if len(imputed) else np.nan,
                    "imputed_sd": float(imputed.std()) if len(imputed) > 1 else np.nan,
                }
            )
    return pd.DataFrame(
        rows,
        columns=[
            "variable",
            "draw",
            "n_imputed",
            "observed_mean",
            "observed_sd",
            "imputed_mean",
            "imputed_sd",
        ],
    )


# ---------------------------
# Feature Encoder
# ---------------------------


@dataclass(frozen=True)
class EncodingSpec:
    """
    Everything needed to encode any completed dataset the same way.

    ``layout`` is the ordered (field, kind) list; treatments come first with
    kind "treatment". Ordinal fields expand to one dummy per non-reference
    level; continuous fields are standardized with the stored (mean, scale).
    """

    layout: Tuple[Tuple[str, str], ...]
    levels: Dict[str, Tuple[Any, ...]]
    scaling: Dict[str, Tuple[float, float]]
    columns: Tuple[str, ...]
    treatments: Tuple[str, ...]
    baseline_columns: Tuple[str, ...]
    outcome: str
    unseen_levels: str = "error"
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True, eq=False)
class EncodedMatrix:
    frame: pd.DataFrame
    spec: EncodingSpec
    outcome: Optional[pd.Series] = None


def fit_encoding(
    completed: CompletedDataset,
    unseen_levels: str = "error",
    audit: Optional[AuditLog] = None,
) -> Tuple[EncodedMatrix, EncodingSpec]:
    """Fit encoding parameters on ``completed`` and encode it."""
    if unseen_levels not in UNSEEN_LEVEL_POLICIES:
        raise ValueError(f"unseen_levels must be one of {UNSEEN_LEVEL_POLICIES}")
    schema = completed.schema
    frame = completed.frame
    _require_complete(completed)

    layout: List[Tuple[str, str]] = [(t, "treatment") for t in schema.treatments]
    levels: Dict[str, Tuple[Any, ...]] = {}
    scaling: Dict[str, Tuple[float, float]] = {}
    columns: List[str] = list(schema.treatments)
    notes: List[str] = []

    for fs in schema.baseline:
        layout.append((fs.name, fs.kind))
        if fs.kind == ORDINAL:
            levels[fs.name] = fs.levels
            columns.extend(dummy_name(fs.name, lv) for lv in fs.levels[1:])
            continue
        columns.append(fs.name)
        if fs.kind == CONTINUOUS:
            values = frame[fs.name].astype(float)
            mean = float(values.mean())
            scale = float(values.std(ddof=0))
            if not np.isfinite(scale) or scale == 0.0:
                notes.append(f"Field '{fs.name}' is constant; scaled by 1.0")
                scale = 1.0
            scaling[fs.name] = (mean, scale)

    spec = EncodingSpec(
        layout=tuple(layout),
        levels=levels,
        scaling=scaling,
        columns=tuple(columns),
        treatments=tuple(schema.treatments),
        baseline_columns=tuple(c for c in columns if c not in schema.treatments),
        outcome=schema.outcome,
        unseen_levels=unseen_levels,
        warnings=tuple(notes),
    )
    _audit(
        audit,
        "ENCODING_FIT",
        {
            "n_columns": len(spec.columns),
            "n_dummies": sum(len(v) - 1 for v in levels.values()),
            "scaling": {k: list(v) for k, v in scaling.items()},
        },
    )
    return encode(completed, spec), spec


def _require_complete(completed: CompletedDataset):
    schema = completed.schema
    cols = list(schema.treatments) + list(schema.baseline_names)
    holes = [c for c in cols if completed.frame[c].isnull().any()]
    if holes:
        raise ValueError(f"Encoding requires completed data; missing values in {holes}")


def encode(
    completed: CompletedDataset,
    spec: EncodingSpec,
    unseen_levels: Optional[str] = None,
) -> EncodedMatrix:
    """
    Encode ``completed`` with a previously fitted spec.

    No statistic is recomputed from ``completed``. A level outside the
    fitted levels raises EncodingMismatchError under the "error" policy, or
    becomes an all-zero dummy row under "zero".
    """
    policy = unseen_levels or spec.unseen_levels
    _require_complete(completed)
    frame = completed.frame
    cols: Dict[str, np.ndarray] = {}

    for name, kind in spec.layout:
        if kind in ("treatment", BINARY):
            cols[name] = frame[name].to_numpy(dtype=float)
        elif kind == CONTINUOUS:
            mean, scale = spec.scaling[name]
            cols[name] = (frame[name].to_numpy(dtype=float) - mean) / scale
        else:
            levels = spec.levels[name]
            codes = _level_codes(frame[name], levels)
            unseen = codes == -2
            if unseen.any() and policy == "error":
                examples = sorted({str(v) for v in frame[name][unseen].unique()})[:5]
                raise EncodingMismatchError(
                    name,
                    f"Field '{name}' has level(s) {examples} not seen when the encoding was fit",
                )
            for k, level in enumerate(levels[1:], start=1):
                cols[dummy_name(name, level)] = (codes == k).astype(float)

    encoded = pd.DataFrame(cols, index=frame.index)[list(spec.columns)]
    outcome = None
    if spec.outcome in frame.columns:
        outcome = frame[spec.outcome].astype(int)
    return EncodedMatrix(frame=encoded, spec=spec, outcome=outcome)


# ---------------------------
# Predictor Selector (cross-validated L1 logistic regression)
# ---------------------------
#
# Penalty scale follows glmnet: minimise -loglik/n + lambda * ||beta||_1 with an
# (nearly) unpenalised intercept, i.e. sklearn C = 1 / (lambda * n). Columns are
# standardized inside every fit and coefficients mapped back to input scale.


@dataclass(frozen=True)
class PredictorSet:
    entries: Tuple[Tuple[str, float], ...]
    penalty: float

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "variable": list(self.names),
                "coefficient": [coef for _, coef in self.entries],
                "lambda": [self.penalty] * len(self.entries),
            },
            columns=["variable", "coefficient", "lambda"],
        )


@dataclass(frozen=True)
class FittedModel:
    intercept: float
    coefficients: Tuple[float, ...]
    penalty: float
    columns: Tuple[str, ...]

    def coef_series(self) -> pd.Series:
        return pd.Series(self.coefficients, index=list(self.columns), dtype=float)


@dataclass(frozen=True, eq=False)
class SelectionResult:
    predictors: PredictorSet
    model: FittedModel
    lambdas: Tuple[float, ...]
    cv_table: pd.DataFrame
    excluded_folds: Tuple[int, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def penalty(self) -> float:
        return self.model.penalty


def _l1_logistic(l1_ratio: float, seed: int, max_iter: int, tol: float) -> LogisticRegression:
    params: Dict[str, Any] = {
        "solver": "liblinear",
        "intercept_scaling": INTERCEPT_SCALING,
        "max_iter": max_iter,
        "tol": tol,
        "random_state": seed,
    }
    if _SKLEARN_COMPAT["penalty_param_deprecated"]:
        params["l1_ratio"] = l1_ratio
    else:
        params["penalty"] = "l1"
    return LogisticRegression(**params)


def _standardize(X: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    mean = X.mean(axis=0)
    scale = X.std(axis=0)
    scale = np.where(scale > 0, scale, 1.0)
    return (X - mean) / scale, mean, scale


def _as_binary_outcome(y: Any) -> np.ndarray:
    y = np.asarray(y, dtype=float).ravel()
    if np.isnan(y).any() or not np.isin(y, [0.0, 1.0]).all():
        raise SelectionError("Outcome must be a fully observed 0/1 vector")
    if np.unique(y).size < 2:
        raise SelectionError("Outcome has a single class; LASSO selection is undefined")
    return y


def lambda_max(X: np.ndarray, y: np.ndarray) -> float:
    """Smallest penalty at which every coefficient is zero (standardized X)."""
    Z, _, _ = _standardize(np.asarray(X, dtype=float))
    y = np.asarray(y, dtype=float)
    return float(np.max(np.abs(Z.T @ (y - y.mean()))) / len(y))


def lambda_grid(
    X: np.ndarray,
    y: np.ndarray,
    n_lambdas: int = N_LAMBDAS,
    lambda_min_ratio: Optional[float] = None,
) -> np.ndarray:
    """Descending geometric grid from lambda_max, glmnet style."""
    n, p = X.shape
    top = lambda_max(X, y)
    if top <= 0:
        raise SelectionError("No design column varies; nothing to select")
    if lambda_min_ratio is None:
        lambda_min_ratio = LAMBDA_MIN_RATIO_SMALL_N if n < p else LAMBDA_MIN_RATIO
    return np.geomspace(top, top * lambda_min_ratio, n_lambdas)


def _fit_path(
    X: np.ndarray,
    y: np.ndarray,
    lambdas: Sequence[float],
    *,
    l1_ratio: float,
    seed: int,
    max_iter: int,
    tol: float,
) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    L1 path over ``lambdas`` (descending), one coordinate-descent fit per value.

    Returns:
        (intercepts[L], coefs[L, p], number of non-converged fits); coefficients
        are on the scale of ``X``.
    """
    Z, mean, scale = _standardize(X)
    n = len(y)
    clf = _l1_logistic(l1_ratio, seed, max_iter, tol)
    intercepts = np.zeros(len(lambdas))
    coefs = np.zeros((len(lambdas), X.shape[1]))

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        for k, lam in enumerate(lambdas):
            clf.set_params(C=1.0 / (lam * n))
            clf.fit(Z, y)
            beta = clf.coef_.ravel() / scale
            coefs[k] = beta
            intercepts[k] = float(clf.intercept_[0]) - float(beta @ mean)

    n_unconverged = 0
    for w in caught:
        if issubclass(w.category, ConvergenceWarning):
            n_unconverged += 1
        else:
            warnings.warn(w.message, w.category)
    return intercepts, coefs, n_unconverged


def _binomial_deviance(y: np.ndarray, prob: np.ndarray) -> np.ndarray:
    """Mean binomial deviance per column of ``prob``."""
    p = np.clip(prob, PROB_EPS, 1 - PROB_EPS)
    yy = y[:, None]
    return -2.0 * np.mean(yy * np.log(p) + (1 - yy) * np.log(1 - p), axis=0)


def _cv_fold_losses(
    X: np.ndarray,
    y: np.ndarray,
    train_idx: np.ndarray,
    test_idx: np.ndarray,
    lambdas: Sequence[float],
    loss: str,
    fit_kwargs: Dict[str, Any],
) -> Dict[str, Any]:
    y_tr, y_te = y[train_idx], y[test_idx]
    if np.unique(y_tr).size < 2 or np.unique(y_te).size < 2:
        return {"degenerate": True, "losses": None, "n_unconverged": 0}

    intercepts, coefs, n_unconverged = _fit_path(X[train_idx], y_tr, lambdas, **fit_kwargs)
    prob = expit(intercepts[None, :] + X[test_idx] @ coefs.T)
    if loss == "deviance":
        losses = _binomial_deviance(y_te, prob)
    else:
        losses = np.array([roc_auc_score(y_te, prob[:, k]) for k in range(len(lambdas))])
    return {"degenerate": False, "losses": losses, "n_unconverged": n_unconverged}


def cross_validate_lambdas(
    X: np.ndarray,
    y: np.ndarray,
    lambdas: Sequence[float],
    *,
    n_folds: int = CV_FOLDS,
    seed: int = RANDOM_STATE,
    loss: str = "deviance",
    l1_ratio: float = L1_RATIO,
    max_iter: int = SOLVER_MAX_ITER,
    tol: float = SOLVER_TOL,
    n_jobs: int = 1,
) -> Tuple[pd.DataFrame, List[int], List[str]]:
    """
    K-fold CV over a fixed lambda grid.

    Folds are assigned uniformly at random (not stratified). A fold whose
    training or held-out part holds a single outcome class is excluded from
    the averages and reported.

    Returns:
        (cv table, excluded fold numbers, warning strings)
    """
    if loss not in CV_LOSSES:
        raise ValueError(f"loss must be one of {CV_LOSSES}")
    if n_folds > len(y):
        raise SelectionError(f"{n_folds} folds requested for {len(y)} rows")

    fit_kwargs = {"l1_ratio": l1_ratio, "seed": seed, "max_iter": max_iter, "tol": tol}
    kf = KFold(n_splits=n_folds, shuffle=True, random_state=seed)
    folds = Parallel(n_jobs=n_jobs)(
        delayed(_cv_fold_losses)(X, y, tr, te, lambdas, loss, fit_kwargs)
        for tr, te in kf.split(X)
    )

    excluded = [i + 1 for i, f in enumerate(folds) if f["degenerate"]]
    notes: List[str] = []
    if excluded:
        notes.append(
            f"Excluded {len(excluded)} of {n_folds} CV fold(s) with a single outcome class: {excluded}"
        )
    used = [f["losses"] for f in folds if not f["degenerate"]]
    if not used:
        raise SelectionError("Every cross-validation fold has a single outcome class")
    unconverged = sum(f["n_unconverged"] for f in folds)
    if unconverged:
        notes.append(f"{unconverged} CV fit(s) hit the solver iteration limit")

    losses = np.vstack(used)
    k = losses.shape[0]
    se = losses.std(axis=0, ddof=1) / np.sqrt(k) if k > 1 else np.zeros(len(lambdas))
    table = pd.DataFrame(
        {
            "lambda": np.asarray(lambdas, dtype=float),
            "mean_loss": losses.mean(axis=0),
            "se_loss": se,
            "n_folds_used": k,
        }
    )
    return table, excluded, notes


def choose_lambda(cv_table: pd.DataFrame, loss: str = "deviance", rule: str = "min") -> float:
    """
    Pick lambda* from a CV table.

    "min" takes the best mean loss (highest mean AUC for loss="auc"); "1se"
    takes the largest lambda within one standard error of it. Ties go to the
    larger lambda.
    """
    if rule not in LAMBDA_RULES:
        raise ValueError(f"rule must be one of {LAMBDA_RULES}")
    higher_is_better = loss == "auc"
    table = cv_table.dropna(subset=["mean_loss"])
    ranked = table.sort_values(
        ["mean_loss", "lambda"], ascending=[not higher_is_better, False], kind="stable"
    )
    best = ranked.iloc[0]
    if rule == "min":
        return float(best["lambda"])

    se = float(best["se_loss"]) if np.isfinite(best["se_loss"]) else 0.0
    if higher_is_better:
        ok = table[table["mean_loss"] >= best["mean_loss"] - se]
    else:
        ok = table[table["mean_loss"] <= best["mean_loss"] + se]
    return float(ok["lambda"].max())


def lasso_path_nonzero_counts(
    X: Any,
    y: Any,
    lambdas: Sequence[float],
    *,
    seed: int = RANDOM_STATE,
    zero_tol: float = COEF_ZERO_TOL,
    max_iter: int = SOLVER_MAX_ITER,
    tol: float = SOLVER_TOL,
) -> List[int]:
    """Number of non-zero coefficients at each lambda, in the order given."""
    X = np.asarray(X, dtype=float)
    y = _as_binary_outcome(y)
    lambdas = np.asarray(lambdas, dtype=float)
    order = np.argsort(-lambdas, kind="stable")
    _, coefs, _ = _fit_path(
        X, y, lambdas[order], l1_ratio=L1_RATIO, seed=seed, max_iter=max_iter, tol=tol
    )
    counts = (np.abs(coefs) >= zero_tol).sum(axis=1)
    out = np.empty(len(lambdas), dtype=int)
    out[order] = counts
    return out.tolist()


def select_predictors(
    X: pd.DataFrame,
    y: Any,
    *,
    n_folds: int = CV_FOLDS,
    seed: int = RANDOM_STATE,
    lambdas: Optional[Sequence[float]] = None,
    n_lambdas: int = N_LAMBDAS,
    lambda_min_ratio: Optional[float] = None,
    loss: str = "deviance",
    lambda_rule: str = "min",
    l1_ratio: float = L1_RATIO,
    zero_tol: float = COEF_ZERO_TOL,
    max_iter: int = SOLVER_MAX_ITER,
    tol: float = SOLVER_TOL,
    n_jobs: int = 1,
    label: str = "lasso",
    audit: Optional[AuditLog] = None,
) -> SelectionResult:
    """
    Cross-validated LASSO logistic regression.

    Args:
        X: Design matrix (DataFrame; column names become predictor names)
        y: Binary outcome aligned with X
        n_folds: CV folds (k)
        seed: Seed for fold assignment and the solver
        lambdas: Explicit penalty grid; default is a glmnet-style grid
        loss: "deviance" (minimised) or "auc" (maximised)
        lambda_rule: "min" or "1se"
        zero_tol: |coef| below this counts as zero
        label: Name used in audit events
        audit: Optional AuditLog instance

    Returns:
        SelectionResult with the PredictorSet (non-zero coefficients, column
        order, intercept excluded), the refit FittedModel at lambda* and the
        CV table.
    """
    columns = [str(c) for c in X.columns]
    Xa = X.to_numpy(dtype=float)
    ya = _as_binary_outcome(y)
    if Xa.shape[1] == 0:
        raise SelectionError("Design matrix has no columns")

    if lambdas is None:
        grid = lambda_grid(Xa, ya, n_lambdas, lambda_min_ratio)
    else:
        grid = np.sort(np.asarray(lambdas, dtype=float))[::-1]
        if (grid <= 0).any():
            raise ValueError("Penalty values must be positive")

    table, excluded, notes = cross_validate_lambdas(
        Xa,
        ya,
        grid,
        n_folds=n_folds,
        seed=seed,
        loss=loss,
        l1_ratio=l1_ratio,
        max_iter=max_iter,
        tol=tol,
        n_jobs=n_jobs,
    )
    best = choose_lambda(table, loss, lambda_rule)
    best_idx = int(np.flatnonzero(grid == best)[0])

    intercepts, coefs, n_unconverged = _fit_path(
        Xa, ya, grid, l1_ratio=l1_ratio, seed=seed, max_iter=max_iter, tol=tol
    )
    coefs = np.where(np.abs(coefs) >= zero_tol, coefs, 0.0)
    table["n_nonzero"] = (coefs != 0).sum(axis=1)
    if n_unconverged:
        notes.append(f"{n_unconverged} full-data fit(s) hit the solver iteration limit")

    beta = coefs[best_idx]
    model = FittedModel(
        intercept=float(intercepts[best_idx]),
        coefficients=tuple(float(b) for b in beta),
        penalty=float(best),
        columns=tuple(columns),
    )
    predictors = PredictorSet(
        entries=tuple((c, float(b)) for c, b in zip(columns, beta) if b != 0.0),
        penalty=float(best),
    )

    _audit(
        audit,
        "LASSO_CV_DONE",
        {
            "label": label,
            "n_rows": int(len(ya)),
            "n_columns": len(columns),
            "n_folds": n_folds,
            "loss": loss,
            "rule": lambda_rule,
            "lambda": float(best),
            "selected": [[n, c] for n, c in predictors.entries],
            "excluded_folds": excluded,
            "warnings": notes,
        },
    )
    return SelectionResult(
        predictors=predictors,
        model=model,
        lambdas=tuple(float(v) for v in grid),
        cv_table=table,
        excluded_folds=tuple(excluded),
        warnings=tuple(notes),
    )


def _select_with_config(
    X: pd.DataFrame,
    y: Any,
    config: PipelineConfig,
    label: str,
    audit: Optional[AuditLog],
) -> SelectionResult:
    return select_predictors(
        X,
        y,
        n_folds=config.n_folds,
        seed=config.stage_seed("cv"),
        n_lambdas=config.n_lambdas,
        lambda_min_ratio=config.lambda_min_ratio,
        loss=config.cv_loss,
        lambda_rule=config.lambda_rule,
        l1_ratio=config.l1_ratio,
        zero_tol=config.zero_tol,
        max_iter=config.solver_max_iter,
        tol=config.solver_tol,
        n_jobs=config.n_jobs,
        label=label,
        audit=audit,
    )


def screen_predictors(
    encoded: EncodedMatrix, config: PipelineConfig, audit: Optional[AuditLog] = None
) -> SelectionResult:
    """First pass: LASSO over the encoded baseline covariates only."""
    X = encoded.frame[list(encoded.spec.baseline_columns)]
    return _select_with_config(X, encoded.outcome, config, "pass1_screen", audit)


# ---------------------------
# Interaction Model Builder
# ---------------------------


@dataclass(frozen=True)
class DesignTerms:
    """Explicit, ordered column list of the moderation model."""

    treatments: Tuple[str, ...]
    main_effects: Tuple[str, ...]
    interactions: Tuple[Tuple[str, str, str], ...]  # (treatment, covariate, column)

    @property
    def columns(self) -> Tuple[str, ...]:
        return self.treatments + self.main_effects + tuple(c for _, _, c in self.interactions)

    def to_frame(self) -> pd.DataFrame:
        rows = [{"column": c, "role": "treatment"} for c in self.treatments]
        rows += [{"column": c, "role": "main_effect"} for c in self.main_effects]
        rows += [
            {"column": c, "role": "interaction", "treatment": t, "covariate": v}
            for t, v, c in self.interactions
        ]
        return pd.DataFrame(rows, columns=["column", "role", "treatment", "covariate"])


def design_terms(spec: EncodingSpec, predictors: PredictorSet) -> DesignTerms:
    """
    Moderation model terms: both treatments, every encoded baseline column,
    and treatment x covariate columns for each screened covariate.
    """
    unknown = [n for n in predictors.names if n not in spec.baseline_columns]
    if unknown:
        raise ValueError(f"Screened predictor(s) are not encoded baseline columns: {unknown}")
    return DesignTerms(
        treatments=spec.treatments,
        main_effects=spec.baseline_columns,
        interactions=tuple(
            (t, c, interaction_name(t, c)) for t in spec.treatments for c in predictors.names
        ),
    )


@dataclass(frozen=True, eq=False)
class DesignMatrix:
    frame: pd.DataFrame
    terms: DesignTerms
    outcome: Optional[pd.Series] = None


def build_design_matrix(encoded: EncodedMatrix, terms: DesignTerms) -> DesignMatrix:
    base = encoded.frame
    needed = list(terms.treatments + terms.main_effects)
    absent = [c for c in needed if c not in base.columns]
    if absent:
        raise ValueError(f"Encoded matrix lacks design column(s): {absent}")

    cols = {c: base[c] for c in needed}
    for treatment, covariate, name in terms.interactions:
        cols[name] = base[treatment] * base[covariate]
    frame = pd.DataFrame(cols, index=base.index)[list(terms.columns)]
    return DesignMatrix(frame=frame, terms=terms, outcome=encoded.outcome)


def select_moderators(
    design: DesignMatrix, config: PipelineConfig, audit: Optional[AuditLog] = None
) -> SelectionResult:
    """Second pass: LASSO over main effects plus treatment interactions."""
    return _select_with_config(design.frame, design.outcome, config, "pass2_moderation", audit)


# ---------------------------
# Scoring & Evaluator
# ---------------------------


def align_columns(
    frame: pd.DataFrame, columns: Sequence[str]
) -> Tuple[pd.DataFrame, List[str], List[str]]:
    """
    Reindex ``frame`` to exactly ``columns``.

    Absent columns are filled with zero and extra columns dropped; no row is
    ever removed.

    Returns:
        (aligned frame, zero-filled columns, ignored columns)
    """
    absent = [c for c in columns if c not in frame.columns]
    extra = [c for c in frame.columns if c not in columns]
    aligned = frame.reindex(columns=list(columns), fill_value=0.0)
    return aligned, absent, extra


def predict_proba(
    model: FittedModel, frame: pd.DataFrame, audit: Optional[AuditLog] = None
) -> np.ndarray:
    aligned, absent, extra = align_columns(frame, model.columns)
    if absent or extra:
        _audit(audit, "SCORING_ALIGNED", {"zero_filled": absent, "ignored": extra})
    eta = model.intercept + aligned.to_numpy(dtype=float) @ np.asarray(model.coefficients)
    return expit(eta)


def split_train_test(
    n_rows: int, train_fraction: float = TRAIN_FRACTION, seed: int = RANDOM_STATE
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Uniform random split (no stratification) into sorted row positions.

    The training partition holds floor(train_fraction * n_rows) rows.
    """
    if not 0 < train_fraction < 1:
        raise ValueError("train_fraction must lie in (0, 1)")
    n_train = int(np.floor(train_fraction * n_rows + 1e-9))
    if n_train < 1 or n_train >= n_rows:
        raise ValueError(f"Cannot split {n_rows} rows with train_fraction={train_fraction}")
    perm = np.random.RandomState(seed).permutation(n_rows)
    return np.sort(perm[:n_train]), np.sort(perm[n_train:])


def bootstrap_auc_ci(
    y_true: np.ndarray,
    y_prob: np.ndarray,
    n_bootstrap: int = BOOTSTRAP_AUC_N,
    ci: float = 0.95,
    seed: int = RANDOM_STATE,
) -> Tuple[float, float]:
    """
    Stratified percentile bootstrap CI for the AUC.

    Resampling within each class keeps both classes in every replicate.

    References:
        - Carpenter J, Bithell J. Bootstrap confidence intervals: when, which,
          what? Statistics in Medicine 2000;19:1141-64.

    Returns:
        (lower, upper); NaN when n < 50 or a class has fewer than 5 cases
    """
    y_true = np.asarray(y_true).astype(int)
    y_prob = np.asarray(y_prob).astype(float)

    if len(y_true) < BOOTSTRAP_MIN_N:
        return float("nan"), float("nan")

    idx_pos = np.where(y_true == 1)[0]
    idx_neg = np.where(y_true == 0)[0]
    if len(idx_pos) < 5 or len(idx_neg) < 5:
        return float("nan"), float("nan")

    rng = np.random.RandomState(seed)
    aucs = []
    for _ in range(n_bootstrap):
        boot_pos = rng.choice(idx_pos, size=len(idx_pos), replace=True)
        boot_neg = rng.choice(idx_neg, size=len(idx_neg), replace=True)
        idx = np.concatenate([boot_pos, boot_neg])
        aucs.append(roc_auc_score(y_true[idx], y_prob[idx]))

    alpha = (1.0 - ci) / 2.0
    low, high = np.percentile(aucs, [alpha * 100.0, (1.0 - alpha) * 100.0])
    return float(low), float(high)


@dataclass(frozen=True)
class EvaluationResult:
    auc: float
    roc: Tuple[Tuple[float, float], ...]
    n_train: int
    n_test: int
    n_test_events: int
    auc_ci_low: float = float("nan")
    auc_ci_high: float = float("nan")
    brier: float = float("nan")
    warnings: Tuple[str, ...] = ()

    def roc_frame(self) -> pd.DataFrame:
        return pd.DataFrame(list(self.roc), columns=["fpr", "tpr"])

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["roc"] = [list(pt) for pt in self.roc]
        out["warnings"] = list(self.warnings)
        for key in ("auc", "auc_ci_low", "auc_ci_high", "brier"):
            out[key] = _finite_or_none(out[key])
        return out


def evaluate_predictions(
    y_true: Any,
    y_prob: Any,
    n_train: int,
    seed: int = RANDOM_STATE,
    notes: Sequence[str] = (),
) -> EvaluationResult:
    """
    ROC curve over every distinct predicted probability, and its area.

    A test set with one outcome class has no ROC curve; AUC is then NaN and a
    warning is attached.
    """
    y_true = np.asarray(y_true).astype(int)
    y_prob = np.asarray(y_prob).astype(float)
    notes = list(notes)
    n_events = int(y_true.sum())

    if np.unique(y_true).size < 2:
        notes.append("Test partition has a single outcome class; AUC undefined")
        return EvaluationResult(
            auc=float("nan"),
            roc=(),
            n_train=int(n_train),
            n_test=int(len(y_true)),
            n_test_events=n_events,
            brier=float(np.mean((y_prob - y_true) ** 2)),
            warnings=tuple(notes),
        )

    fpr, tpr, _ = roc_curve(y_true, y_prob, drop_intermediate=False)
    auc_val = float(auc(fpr, tpr))
    ci_low, ci_high = bootstrap_auc_ci(y_true, y_prob, seed=seed)
    return EvaluationResult(
        auc=auc_val,
        roc=tuple((float(f), float(t)) for f, t in zip(fpr, tpr)),
        n_train=int(n_train),
        n_test=int(len(y_true)),
        n_test_events=n_events,
        auc_ci_low=ci_low,
        auc_ci_high=ci_high,
        brier=float(brier_score_loss(y_true, y_prob)),
        warnings=tuple(notes),
    )


@dataclass(frozen=True, eq=False)
class FittedRecipe:
    """Everything fit on one (training) dataset that scoring new data needs."""

    encoding: EncodingSpec
    screening: SelectionResult
    terms: DesignTerms
    selection: SelectionResult

    @property
    def model(self) -> FittedModel:
        return self.selection.model

    def design_for(self, completed: CompletedDataset) -> DesignMatrix:
        return build_design_matrix(encode(completed, self.encoding), self.terms)

    def predict_proba(
        self, completed: CompletedDataset, audit: Optional[AuditLog] = None
    ) -> np.ndarray:
        return predict_proba(self.model, self.design_for(completed).frame, audit)


def fit_recipe(
    completed: CompletedDataset, config: PipelineConfig, audit: Optional[AuditLog] = None
) -> FittedRecipe:
    """Encoder, LASSO screen, interaction terms and LASSO selection on one dataset."""
    encoded, spec = fit_encoding(completed, config.unseen_levels, audit)
    screening = screen_predictors(encoded, config, audit)
    terms = design_terms(spec, screening.predictors)
    selection = select_moderators(build_design_matrix(encoded, terms), config, audit)
    return FittedRecipe(encoding=spec, screening=screening, terms=terms, selection=selection)


def evaluate_recipe(
    recipe: FittedRecipe,
    test: CompletedDataset,
    n_train: int,
    seed: int = RANDOM_STATE,
    audit: Optional[AuditLog] = None,
) -> EvaluationResult:
    """Score held-out data with a recipe fit elsewhere."""
    design = recipe.design_for(test)
    _, absent, _ = align_columns(design.frame, recipe.model.columns)
    notes = []
    if absent:
        notes.append(f"Zero-filled {len(absent)} model column(s) absent from test data: {absent}")
    y_prob = predict_proba(recipe.model, design.frame, audit)
    result = evaluate_predictions(test.outcome, y_prob, n_train, seed=seed, notes=notes)
    _audit(
        audit,
        "EVALUATION_DONE",
        {
            "auc": _finite_or_none(result.auc),
            "auc_ci": [_finite_or_none(result.auc_ci_low), _finite_or_none(result.auc_ci_high)],
            "brier": _finite_or_none(result.brier),
            "n_train": result.n_train,
            "n_test": result.n_test,
        },
    )
    return result


def evaluate(
    completed: CompletedDataset,
    config: PipelineConfig,
    audit: Optional[AuditLog] = None,
) -> Tuple[FittedRecipe, EvaluationResult]:
    """Split, fit everything on the training part, score the test part."""
    train_idx, test_idx = split_train_test(
        completed.n_rows, config.train_fraction, config.stage_seed("split")
    )
    train, test = completed.take(train_idx), completed.take(test_idx)
    recipe = fit_recipe(train, config, audit)
    return recipe, evaluate_recipe(recipe, test, len(train_idx), config.seed, audit)


# ---------------------------
# Pipeline state machine
# ---------------------------


class Stage(str, Enum):
    INGESTED = "Ingested"
    IMPUTED = "Imputed"
    ENCODED = "Encoded"
    SCREENED = "Screened"
    INTERACTIONS_BUILT = "InteractionsBuilt"
    SELECTED = "Selected"
    SPLIT = "Split"
    FITTED = "Fitted"
    EVALUATED = "Evaluated"
    FAILED = "Failed"


STAGE_ORDER = (
    Stage.INGESTED,
    Stage.IMPUTED,
    Stage.ENCODED,
    Stage.SCREENED,
    Stage.INTERACTIONS_BUILT,
    Stage.SELECTED,
    Stage.SPLIT,
    Stage.FITTED,
    Stage.EVALUATED,
)


@dataclass(frozen=True, eq=False)
class PipelineContext:
    """
    Immutable value threaded from stage to stage.

    Each stage returns a new context one step further along STAGE_ORDER.
    A failure produces a terminal FAILED context carrying the error and the
    stage that raised it.
    """

    config: PipelineConfig
    stage: Stage
    dataset: Optional[Dataset] = None
    missingness: Optional[pd.DataFrame] = None
    draws: Tuple[CompletedDataset, ...] = ()
    completed: Optional[CompletedDataset] = None
    correlation: Optional[pd.DataFrame] = None
    diagnostics: Optional[pd.DataFrame] = None
    encoded: Optional[EncodedMatrix] = None
    screening: Optional[SelectionResult] = None
    terms: Optional[DesignTerms] = None
    design: Optional[DesignMatrix] = None
    selection: Optional[SelectionResult] = None
    train_index: Optional[np.ndarray] = None
    test_index: Optional[np.ndarray] = None
    recipe: Optional[FittedRecipe] = None
    evaluation: Optional[EvaluationResult] = None
    warnings: Tuple[str, ...] = ()
    error: Optional[BaseException] = None
    failed_stage: Optional[Stage] = None

    def advance(self, stage: Stage, notes: Sequence[str] = (), **changes) -> "PipelineContext":
        if self.stage is Stage.FAILED:
            raise RuntimeError("A failed pipeline cannot advance")
        pos = STAGE_ORDER.index(self.stage)
        if pos + 1 >= len(STAGE_ORDER) or STAGE_ORDER[pos + 1] is not stage:
            raise RuntimeError(
                f"Illegal pipeline transition {self.stage.value} -> {stage.value}"
            )
        return replace(self, stage=stage, warnings=self.warnings + tuple(notes), **changes)

    def fail(self, stage: Stage, error: BaseException) -> "PipelineContext":
        return replace(self, stage=Stage.FAILED, failed_stage=stage, error=error)

    def raise_for_failure(self):
        if self.stage is Stage.FAILED:
            raise PipelineFailed(self.failed_stage, self.error) from self.error


def ingest(
    df: pd.DataFrame,
    schema: TrialSchema,
    config: PipelineConfig,
    audit: Optional[AuditLog] = None,
) -> PipelineContext:
    dataset = validate_dataset(df, schema, audit)
    risk = assess_missingness_risk(dataset, audit)
    notes = list(dataset.warnings)
    if risk["risk_level"] != "LOW":
        notes.append(
            f"Missingness risk {risk['risk_level']}: {risk['overall_missing_pct']:.1f}% of baseline cells missing"
        )
    return PipelineContext(
        config=config,
        stage=Stage.INGESTED,
        dataset=dataset,
        missingness=missingness_by_variable(dataset),
        warnings=tuple(notes),
    )


def impute_stage(ctx: PipelineContext, audit: Optional[AuditLog] = None) -> PipelineContext:
    cfg = ctx.config
    draws = impute_dataset(
        ctx.dataset,
        method=cfg.imputation_method,
        n_imputations=cfg.n_imputations,
        max_iter=cfg.max_iter,
        n_donors=cfg.n_donors,
        seed=cfg.stage_seed("imputation"),
        n_jobs=cfg.n_jobs,
        audit=audit,
    )
    completed = draws[cfg.analysis_draw]
    return ctx.advance(
        Stage.IMPUTED,
        notes=completed.warnings,
        draws=tuple(draws),
        completed=completed,
        correlation=correlation_matrix(completed),
        diagnostics=imputation_diagnostics(draws, ctx.dataset),
    )


def encode_stage(ctx: PipelineContext, audit: Optional[AuditLog] = None) -> PipelineContext:
    encoded, spec = fit_encoding(ctx.completed, ctx.config.unseen_levels, audit)
    return ctx.advance(Stage.ENCODED, notes=spec.warnings, encoded=encoded)


def screen_stage(ctx: PipelineContext, audit: Optional[AuditLog] = None) -> PipelineContext:
    screening = screen_predictors(ctx.encoded, ctx.config, audit)
    return ctx.advance(Stage.SCREENED, notes=screening.warnings, screening=screening)


def interactions_stage(ctx: PipelineContext, audit: Optional[AuditLog] = None) -> PipelineContext:
    terms = design_terms(ctx.encoded.spec, ctx.screening.predictors)
    design = build_design_matrix(ctx.encoded, terms)
    _audit(
        audit,
        "DESIGN_BUILT",
        {"n_columns": len(terms.columns), "interactions": [c for _, _, c in terms.interactions]},
    )
    return ctx.advance(Stage.INTERACTIONS_BUILT, terms=terms, design=design)


def select_stage(ctx: PipelineContext, audit: Optional[AuditLog] = None) -> PipelineContext:
    selection = select_moderators(ctx.design, ctx.config, audit)
    return ctx.advance(Stage.SELECTED, notes=selection.warnings, selection=selection)


def split_stage(ctx: PipelineContext, audit: Optional[AuditLog] = None) -> PipelineContext:
    cfg = ctx.config
    seed = cfg.stage_seed("split")
    train_idx, test_idx = split_train_test(ctx.completed.n_rows, cfg.train_fraction, seed)
    _audit(
        audit,
        "SPLIT_SIZES",
        {"n_train": int(len(train_idx)), "n_test": int(len(test_idx)), "seed": seed},
    )
    return ctx.advance(Stage.SPLIT, train_index=train_idx, test_index=test_idx)


def fit_stage(ctx: PipelineContext, audit: Optional[AuditLog] = None) -> PipelineContext:
    train = ctx.completed.take(ctx.train_index)
    recipe = fit_recipe(train, ctx.config, audit)
    notes = (
        list(recipe.encoding.warnings)
        + [f"[train] {w}" for w in recipe.screening.warnings]
        + [f"[train] {w}" for w in recipe.selection.warnings]
    )
    return ctx.advance(Stage.FITTED, notes=notes, recipe=recipe)


def evaluate_stage(ctx: PipelineContext, audit: Optional[AuditLog] = None) -> PipelineContext:
    test = ctx.completed.take(ctx.test_index)
    result = evaluate_recipe(
        ctx.recipe, test, len(ctx.train_index), seed=ctx.config.seed, audit=audit
    )
    return ctx.advance(Stage.EVALUATED, notes=result.warnings, evaluation=result)


PIPELINE_STEPS: Tuple[Tuple[Stage, Callable[..., PipelineContext]], ...] = (
    (Stage.IMPUTED, impute_stage),
    (Stage.ENCODED, encode_stage),
    (Stage.SCREENED, screen_stage),
    (Stage.INTERACTIONS_BUILT, interactions_stage),
    (Stage.SELECTED, select_stage),
    (Stage.SPLIT, split_stage),
    (Stage.FITTED, fit_stage),
    (Stage.EVALUATED, evaluate_stage),
)


def run_pipeline(
    df: pd.DataFrame,
    schema: TrialSchema = SMOKING_TRIAL_SCHEMA,
    config: Optional[PipelineConfig] = None,
    audit: Optional[AuditLog] = None,
) -> PipelineContext:
    """
    Run every stage in order.

    Never raises for a stage failure: the returned context is then in the
    FAILED state with ``error`` and ``failed_stage`` set. Call
    ``raise_for_failure()`` to turn that into an exception.
    """
    config = config or PipelineConfig()
    _audit(audit, "PIPELINE_START", {"config": asdict(config), "schema": schema.to_dict()})

    try:
        ctx = ingest(df, schema, config, audit)
    except Exception as e:
        _audit(audit, "PIPELINE_FAILED", {"stage": Stage.INGESTED.value, "error": str(e)})
        return PipelineContext(config=config, stage=Stage.INGESTED).fail(Stage.INGESTED, e)

    for target, step in PIPELINE_STEPS:
        try:
            ctx = step(ctx, audit)
        except Exception as e:
            _audit(
                audit,
                "PIPELINE_FAILED",
                {
                    "stage": target.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "field": getattr(e, "field", None),
                },
            )
            return ctx.fail(target, e)

    _audit(
        audit,
        "PIPELINE_DONE",
        {"auc": _finite_or_none(ctx.evaluation.auc), "n_warnings": len(ctx.warnings)},
    )
    return ctx


# ---------------------------
# Model Serialization
# ---------------------------


def save_model(
    recipe: FittedRecipe,
    output_path: Path,
    audit: Optional[AuditLog] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Path:
    """
    Serialize a fitted recipe with joblib, plus a JSON metadata sidecar.

    Returns:
        Path to the saved model file
    """
    output_path = Path(output_path)
    output_path.mkdir(parents=True, exist_ok=True)

    payload = {
        "recipe": recipe,
        "columns": list(recipe.model.columns),
        "penalty": recipe.model.penalty,
        "timestamp": now_ts(),
        "moderate_version": VERSION,
        **(extra or {}),
    }
    model_path = output_path / "moderate_model.joblib"
    joblib.dump(payload, model_path)
    _audit(audit, "MODEL_SAVED", {"path": str(model_path)})

    write_json(
        output_path / "model_metadata.json",
        {
            "columns": payload["columns"],
            "n_columns": len(payload["columns"]),
            "penalty": payload["penalty"],
            "intercept": recipe.model.intercept,
            "nonzero": [[n, c] for n, c in recipe.selection.predictors.entries],
            "timestamp": payload["timestamp"],
        },
    )
    return model_path


def load_model(model_path: Path, audit: Optional[AuditLog] = None) -> Dict[str, Any]:
    model_path = Path(model_path)
    if not model_path.exists():
        raise FileNotFoundError(f"Model file not found: {model_path}")
    payload = joblib.load(model_path)
    _audit(audit, "MODEL_LOADED", {"path": str(model_path)})
    return payload


# ---------------------------
# Output artifacts
# ---------------------------


def export_outputs(
    ctx: PipelineContext, out_dir: Path, audit: Optional[AuditLog] = None
) -> Dict[str, Path]:
    """
    Write the tables consumed by reporting collaborators.

    Returns:
        Mapping of artifact name to written path
    """
    out_dir = Path(out_dir)
    tables_dir = out_dir / "Tables"
    written: Dict[str, Path] = {}

    def _csv(name: str, df: Optional[pd.DataFrame], index: bool = False):
        if df is None:
            return
        path = tables_dir / f"{name}.csv"
        write_csv(path, df, index=index)
        written[name] = path

    _csv("Missingness_Summary", ctx.missingness)
    _csv("Correlation_Matrix", ctx.correlation, index=True)
    _csv("Imputation_Diagnostics", ctx.diagnostics)
    if ctx.screening is not None:
        _csv("LASSO_Pass1_Predictors", ctx.screening.predictors.to_frame())
        _csv("LASSO_Pass1_CV", ctx.screening.cv_table)
    if ctx.terms is not None:
        _csv("Design_Columns", ctx.terms.to_frame())
    if ctx.selection is not None:
        _csv("LASSO_Pass2_Predictors", ctx.selection.predictors.to_frame())
        _csv("LASSO_Pass2_CV", ctx.selection.cv_table)
    if ctx.evaluation is not None:
        _csv("ROC_Curve", ctx.evaluation.roc_frame())
        path = out_dir / "Evaluation.json"
        write_json(path, ctx.evaluation.to_dict())
        written["Evaluation"] = path
    if ctx.recipe is not None:
        written["Model"] = save_model(
            ctx.recipe, out_dir / "Models", audit, extra={"seed": ctx.config.seed}
        )

    summary_path = out_dir / "Run_Summary.json"
    write_json(
        summary_path,
        {
            "stage": ctx.stage.value,
            "failed_stage": ctx.failed_stage.value if ctx.failed_stage else None,
            "error": str(ctx.error) if ctx.error else None,
            "config": asdict(ctx.config),
            "warnings": list(ctx.warnings),
            "versions": get_versions(),
        },
    )
    written["Run_Summary"] = summary_path
    _audit(audit, "OUTPUTS_EXPORTED", {k: str(v) for k, v in written.items()})
    return written


# ---------------------------
# Testing Infrastructure
# ---------------------------


class SyntheticTrialGenerator:
    """
    Generate synthetic data matching SMOKING_TRIAL_SCHEMA for CI/CD testing.

    Abstinence depends on varenicline, FTCD and cigarettes per day, and NMR
    moderates the varenicline effect (fast metabolizers benefit more).
    """

    DEFAULT_MISSING_FIELDS = ("NMR", "bdi_score_w00", "crv_total_pq1", "inc")

    @staticmethod
    def generate(
        n_samples: int = 300,
        missing_rate: float = 0.1,
        missing_fields: Sequence[str] = DEFAULT_MISSING_FIELDS,
        moderation: float = 0.8,
        random_state: int = RANDOM_STATE,
    ) -> pd.DataFrame:
        """
        Args:
            n_samples: Number of participants
            missing_rate: Expected missing fraction in each of ``missing_fields``
            missing_fields: Baseline fields that receive missing values (MAR on age)
            moderation: Log-odds coefficient of the Var x standardized NMR term
            random_state: Random seed

        Returns:
            DataFrame with SMOKING_TRIAL_SCHEMA columns
        """
        rng = np.random.RandomState(random_state)
        n = n_samples

        def _z(v):
            return (v - v.mean()) / v.std()

        race = rng.choice(4, size=n, p=[0.6, 0.3, 0.07, 0.03])
        data = {
            "Var": rng.binomial(1, 0.5, n),
            "BA": rng.binomial(1, 0.5, n),
            "age_ps": np.round(rng.normal(47, 11, n), 0),
            "sex_ps": rng.binomial(1, 0.5, n),
            "NHW": (race == 0).astype(int),
            "Black": (race == 1).astype(int),
            "Hisp": (race == 2).astype(int),
            "inc": rng.choice([1, 2, 3, 4, 5], size=n, p=[0.25, 0.25, 0.2, 0.15, 0.15]),
            "edu": rng.choice([1, 2, 3, 4, 5], size=n, p=[0.05, 0.3, 0.3, 0.25, 0.1]),
            "ftcd_score": rng.binomial(10, 0.5, n).astype(float),
            "ftcd.5.mins": rng.binomial(1, 0.6, n),
            "bdi_score_w00": np.round(rng.gamma(2.0, 8.0, n), 0),
            "cpd_ps": np.clip(np.round(rng.normal(16, 6, n)), 1, None),
            "crv_total_pq1": np.round(rng.normal(24, 6, n), 0),
            "hedonsum_n_pq1": np.round(rng.normal(22, 6, n), 0),
            "hedonsum_y_pq1": np.round(rng.normal(14, 5, n), 0),
            "shaps_score_pq1": rng.poisson(2, n).astype(float),
            "otherdiag": rng.binomial(1, 0.3, n),
            "antidepmed": rng.binomial(1, 0.2, n),
            "mde_curr": rng.binomial(1, 0.15, n),
            "NMR": np.round(rng.lognormal(np.log(0.35), 0.5, n), 3),
            "Only.Menthol": rng.binomial(1, 0.4, n),
            "readiness": np.clip(np.round(rng.normal(8, 1.5, n), 0), 0, 10),
        }

        logit = (
            -1.3
            + 0.6 * data["Var"]
            + 0.2 * data["BA"]
            - 0.6 * _z(data["ftcd_score"])
            - 0.3 * _z(data["cpd_ps"])
            + moderation * data["Var"] * _z(data["NMR"])
        )
        data["abst"] = rng.binomial(1, expit(logit))
        df = pd.DataFrame(data)

        # MAR: older participants skip more items
        if missing_rate > 0:
            weight = expit(_z(df["age_ps"].to_numpy(dtype=float)))
            p_miss = np.clip(missing_rate * weight / weight.mean(), 0, 0.95)
            for name in missing_fields:
                df.loc[rng.random_sample(n) < p_miss, name] = np.nan

        return df[list(SMOKING_TRIAL_SCHEMA.required_fields)]


FAST_TEST_CONFIG = {
    "n_imputations": 2,
    "max_iter": 5,
    "n_folds": 5,
    "n_lambdas": 15,
}


def run_moderation_analysis(
    filepath: Path,
    output_root: Path,
    schema: TrialSchema = SMOKING_TRIAL_SCHEMA,
    config: Optional[PipelineConfig] = None,
) -> Dict[str, Any]:
    """Read a trial export, run the pipeline, and write every artifact."""
    filepath = Path(filepath)
    config = config or PipelineConfig()
    out_dir = Path(output_root) / f"{safe_name(filepath.stem)}_Moderation"
    out_dir.mkdir(parents=True, exist_ok=True)

    audit = AuditLog(out_dir / "MODERATE_AUDIT_LOG.jsonl")
    audit.log(
        "RUN_START",
        {"input_file": str(filepath), "output_dir": str(out_dir), "versions": get_versions()},
    )

    print(f"\n{'=' * 70}\nMODERATE Analysis: {filepath.name}\n{'=' * 70}")
    print(f"Verification Key: {audit.get_verification_key()}")
    print("-" * 70)

    df = smart_read_file(filepath, audit)
    ctx = run_pipeline(df, schema, config, audit)
    written = export_outputs(ctx, out_dir, audit)

    if ctx.stage is Stage.FAILED:
        field_name = getattr(ctx.error, "field", None)
        print(f"FAILED at stage {ctx.failed_stage.value}: {ctx.error}")
        if field_name:
            print(f"   Offending field: {field_name}")
        audit.finalize_session()
        return {
            "status": "failed",
            "stage": ctx.failed_stage.value,
            "error": str(ctx.error),
            "field": field_name,
            "output_dir": str(out_dir),
        }

    for w in ctx.warnings:
        print(f"   Warning: {w}")
    print(
        f"Pass 1 selected {len(ctx.screening.predictors)} covariate(s) "
        f"(lambda={ctx.screening.penalty:.4g}): {', '.join(ctx.screening.predictors.names) or '-'}"
    )
    print(
        f"Pass 2 selected {len(ctx.selection.predictors)} term(s) "
        f"(lambda={ctx.selection.penalty:.4g}): {', '.join(ctx.selection.predictors.names) or '-'}"
    )
    ev = ctx.evaluation
    print(
        f"Test AUC = {ev.auc:.3f} (95% CI {ev.auc_ci_low:.3f}-{ev.auc_ci_high:.3f}), "
        f"n_train={ev.n_train}, n_test={ev.n_test}"
    )
    session = audit.finalize_session()
    return {
        "status": "success",
        "output_dir": str(out_dir),
        "auc": ev.auc,
        "artifacts": {k: str(v) for k, v in written.items()},
        "integrity_hash": session["integrity_hash"],
    }


def run_integration_test(output_dir: Optional[Path] = None) -> Dict[str, Any]:
    """
    Run the whole pipeline on synthetic data.

    Returns:
        Dictionary with test results
    """
    import tempfile

    results = {"passed": False, "tests_run": 0, "tests_passed": 0, "errors": []}

    with tempfile.TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)
        csv_path = tmpdir / "synthetic_trial.csv"
        output_root = Path(output_dir) if output_dir else tmpdir / "output"

        checks = [
            (
                "Synthetic data generation",
                lambda: SyntheticTrialGenerator.generate(n_samples=300).to_csv(
                    csv_path, index=False
                ),
            ),
            (
                "Pipeline execution",
                lambda: run_moderation_analysis(
                    csv_path,
                    output_root,
                    config=PipelineConfig.from_session_config(FAST_TEST_CONFIG),
                ),
            ),
        ]
        run_result: Dict[str, Any] = {}
        for name, check in checks:
            results["tests_run"] += 1
            try:
                out = check()
                if isinstance(out, dict):
                    run_result = out
                    assert out.get("status") == "success", out.get("error")
                results["tests_passed"] += 1
            except Exception as e:
                results["errors"].append(f"{name} failed: {e}")

        results["tests_run"] += 1
        try:
            out_dir = Path(run_result["output_dir"])
            for table in ("LASSO_Pass1_Predictors", "LASSO_Pass2_Predictors", "ROC_Curve"):
                assert (out_dir / "Tables" / f"{table}.csv").exists(), f"{table} missing"
            results["tests_passed"] += 1
        except Exception as e:
            results["errors"].append(f"Output verification failed: {e}")

    results["passed"] = results["tests_passed"] == results["tests_run"]
    return results


# ---------------------------
# Command line
# ---------------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="MODERATE",
        description="LASSO predictor selection and treatment-moderation analysis",
    )
    p.add_argument("data", nargs="?", help="Trial export (CSV, TSV, TXT, XLSX)")
    p.add_argument("--schema", help="Schema JSON (default: built-in smoking trial schema)")
    p.add_argument("--output", default=OUTPUT_ROOT_DEFAULT, help="Output root directory")
    p.add_argument("--seed", type=int, help="Master random seed")
    p.add_argument("--m", dest="n_imputations", type=int, help="Number of imputations")
    p.add_argument("--maxit", dest="max_iter", type=int, help="Imputation iterations")
    p.add_argument("--method", dest="imputation_method", choices=IMPUTATION_METHODS)
    p.add_argument("--folds", dest="n_folds", type=int, help="Cross-validation folds")
    p.add_argument("--lambda-rule", dest="lambda_rule", choices=LAMBDA_RULES)
    p.add_argument("--cv-loss", dest="cv_loss", choices=CV_LOSSES)
    p.add_argument("--train-fraction", dest="train_fraction", type=float)
    p.add_argument("--unseen-levels", dest="unseen_levels", choices=UNSEEN_LEVEL_POLICIES)
    p.add_argument(
        "--n-jobs", dest="n_jobs", type=int, help="Parallel workers (-1 = all, 0 = all but two)"
    )
    p.add_argument("--test", action="store_true", help="Run the synthetic integration test")
    return p


CLI_CONFIG_KEYS = (
    "seed",
    "n_imputations",
    "max_iter",
    "imputation_method",
    "n_folds",
    "lambda_rule",
    "cv_loss",
    "train_fraction",
    "unseen_levels",
    "n_jobs",
)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    print("=" * 70 + f"\nMODERATE {VERSION}\n" + "=" * 70)

    if args.test:
        print("\nRunning Integration Tests\n" + "-" * 70)
        results = run_integration_test()
        print(f"\nTests passed: {results['tests_passed']}/{results['tests_run']}")
        for e in results["errors"]:
            print(f"  - {e}")
        return 0 if results["passed"] else 1

    if not args.data:
        parser.error("DATA is required unless --test is given")

    data_path = Path(args.data).expanduser()
    if not data_path.exists():
        parser.error(f"Data file not found: {data_path}")

    if args.n_jobs == 0:
        args.n_jobs = SMART_N_JOBS
    try:
        schema = load_schema(Path(args.schema)) if args.schema else SMOKING_TRIAL_SCHEMA
        config = PipelineConfig.from_session_config(
            {k: getattr(args, k) for k in CLI_CONFIG_KEYS}
        )
    except (OSError, ValueError) as e:
        parser.error(str(e))
    result = run_moderation_analysis(
        data_path, Path(args.output).expanduser().resolve(), schema, config
    )
    print("=" * 70 + f"\nResults folder: {result['output_dir']}\n" + "=" * 70)
    return 0 if result["status"] == "success" else 1


if __name__ == "__main__":
    sys.exit(main())
