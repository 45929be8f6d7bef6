"""
MODERATE Unit and Integration Tests

Run with: pytest test_moderate.py -v
Skip the long-running end-to-end checks with: pytest -m "not slow"
"""

# Import MODERATE components
import json
import sys
import tempfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

sys.path.insert(0, str(Path(__file__).parent))

from MODERATE import (
    CONTINUOUS,
    FAST_TEST_CONFIG,
    ORDINAL,
    SMOKING_TRIAL_SCHEMA,
    AuditLog,
    CompletedDataset,
    EncodingMismatchError,
    FieldSpec,
    FittedModel,
    ImputationError,
    PipelineConfig,
    PipelineFailed,
    PredictorSet,
    SchemaError,
    SelectionError,
    Stage,
    SyntheticTrialGenerator,
    TrialSchema,
    align_columns,
    bootstrap_auc_ci,
    build_design_matrix,
    choose_lambda,
    correlation_matrix,
    derive_seed,
    design_terms,
    encode,
    evaluate,
    evaluate_predictions,
    export_outputs,
    fit_encoding,
    imputation_diagnostics,
    impute_dataset,
    ingest,
    lambda_max,
    lasso_path_nonzero_counts,
    load_model,
    load_schema,
    main,
    missingness_by_variable,
    missingness_mask,
    predict_proba,
    run_integration_test,
    run_pipeline,
    select_predictors,
    split_train_test,
    validate_dataset,
)

TINY_SCHEMA = TrialSchema(
    outcome="y",
    treatments=("t1", "t2"),
    baseline=(FieldSpec("x1", CONTINUOUS), FieldSpec("x2", CONTINUOUS)),
)


def _complete_dataset(n_samples=200, random_state=7):
    df = SyntheticTrialGenerator.generate(
        n_samples=n_samples, missing_rate=0.0, random_state=random_state
    )
    ds = validate_dataset(df, SMOKING_TRIAL_SCHEMA)
    return CompletedDataset(frame=ds.frame, schema=ds.schema)


class TestSyntheticTrialGenerator:
    """Tests for synthetic trial data."""

    def test_schema_columns(self):
        df = SyntheticTrialGenerator.generate(n_samples=120)
        assert len(df) == 120
        assert list(df.columns) == list(SMOKING_TRIAL_SCHEMA.required_fields)
        assert df["abst"].isin([0, 1]).all()

    def test_missing_only_in_requested_fields(self):
        df = SyntheticTrialGenerator.generate(
            n_samples=300, missing_rate=0.25, missing_fields=("NMR",), random_state=500
        )
        missing = df.isnull().sum()
        assert missing["NMR"] > 0
        assert missing.drop("NMR").sum() == 0


class TestSchemaValidation:
    """Dataset checks against the declared schema."""

    def test_valid_dataset(self):
        df = SyntheticTrialGenerator.generate(n_samples=50)
        ds = validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        assert ds.n_rows == 50
        assert isinstance(ds.frame["inc"].dtype, pd.CategoricalDtype)
        assert list(ds.frame["inc"].cat.categories) == [1, 2, 3, 4, 5]

    def test_missing_required_field(self):
        df = SyntheticTrialGenerator.generate(n_samples=50).drop(columns=["NMR"])
        with pytest.raises(SchemaError) as exc:
            validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        assert exc.value.field == "NMR"

    def test_non_numeric_continuous(self):
        df = SyntheticTrialGenerator.generate(n_samples=50)
        df["cpd_ps"] = df["cpd_ps"].astype(object)
        df.loc[3, "cpd_ps"] = "ten"
        with pytest.raises(SchemaError) as exc:
            validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        assert exc.value.field == "cpd_ps"

    def test_binary_out_of_range(self):
        df = SyntheticTrialGenerator.generate(n_samples=50)
        df.loc[0, "sex_ps"] = 2
        with pytest.raises(SchemaError) as exc:
            validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        assert exc.value.field == "sex_ps"

    def test_treatment_must_be_observed(self):
        df = SyntheticTrialGenerator.generate(n_samples=50)
        df["BA"] = df["BA"].astype(float)
        df.loc[4, "BA"] = np.nan
        with pytest.raises(SchemaError) as exc:
            validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        assert exc.value.field == "BA"

    def test_undeclared_ordinal_level(self):
        df = SyntheticTrialGenerator.generate(n_samples=50)
        df.loc[2, "edu"] = 9
        with pytest.raises(SchemaError) as exc:
            validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        assert exc.value.field == "edu"

    def test_extra_columns_ignored(self):
        df = SyntheticTrialGenerator.generate(n_samples=50)
        df["site"] = "A"
        ds = validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        assert "site" not in ds.frame.columns
        assert any("site" in w for w in ds.warnings)

    def test_load_schema(self, tmp_path):
        path = tmp_path / "schema.json"
        path.write_text(
            json.dumps(
                {
                    "outcome": "quit",
                    "treatments": ["drug", "therapy"],
                    "baseline": [
                        {"name": "age", "type": "continuous"},
                        {"name": "stage", "type": "ordinal", "levels": ["low", "mid", "high"]},
                    ],
                }
            )
        )
        schema = load_schema(path)
        assert schema.required_fields == ("quit", "drug", "therapy", "age", "stage")
        assert schema.field("stage").kind == ORDINAL
        assert schema.field("stage").levels == ("low", "mid", "high")

    def test_dummy_name_collision_rejected(self):
        with pytest.raises(SchemaError) as exc:
            TrialSchema(
                outcome="y",
                treatments=("t1", "t2"),
                baseline=(FieldSpec("g", ORDINAL, levels=(1, 2, 3)), FieldSpec("g_2", CONTINUOUS)),
            )
        assert exc.value.field == "g_2"

    def test_interaction_name_collision_rejected(self):
        with pytest.raises(SchemaError):
            TrialSchema(
                outcome="y",
                treatments=("t1", "t2"),
                baseline=(FieldSpec("t1:x", CONTINUOUS), FieldSpec("x", CONTINUOUS)),
            )

    def test_collision_in_loaded_schema(self, tmp_path):
        path = tmp_path / "schema.json"
        path.write_text(
            json.dumps(
                {
                    "outcome": "y",
                    "treatments": ["t1", "t2"],
                    "baseline": [
                        {"name": "g", "type": "ordinal", "levels": [1, 2, 3]},
                        {"name": "g_3", "type": "binary"},
                    ],
                }
            )
        )
        with pytest.raises(SchemaError):
            load_schema(path)

    def test_encoded_columns_unique(self):
        columns = SMOKING_TRIAL_SCHEMA.encoded_columns
        assert len(columns) == len(set(columns))
        _, spec = fit_encoding(_complete_dataset())
        assert spec.columns == columns

    def test_schema_needs_two_treatments(self):
        with pytest.raises(ValueError):
            TrialSchema(outcome="y", treatments=("t1",), baseline=(FieldSpec("x", CONTINUOUS),))


class TestMissingness:
    """Tests for missingness summaries."""

    def test_summary_sorted_and_counted(self):
        df = SyntheticTrialGenerator.generate(n_samples=100, missing_rate=0.0)
        df.loc[:19, "NMR"] = np.nan
        df.loc[:4, "bdi_score_w00"] = np.nan
        ds = validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        summary = missingness_by_variable(ds)
        assert summary.iloc[0]["variable"] == "NMR"
        assert summary.iloc[0]["n_missing"] == 20
        assert summary.iloc[1]["variable"] == "bdi_score_w00"
        assert summary["pct_missing"].is_monotonic_decreasing

    def test_mask_marks_original_gaps(self):
        df = SyntheticTrialGenerator.generate(n_samples=40, missing_rate=0.0)
        df.loc[[2, 5], "NMR"] = np.nan
        mask = missingness_mask(validate_dataset(df, SMOKING_TRIAL_SCHEMA))
        assert mask["NMR"].sum() == 2
        assert mask["NMR"].iloc[2]
        assert "Var" not in mask.columns


class TestImputation:
    """Tests for chained-equations imputation."""

    def test_pmm_scenario_fills_every_value(self):
        df = SyntheticTrialGenerator.generate(
            n_samples=300, missing_rate=0.25, missing_fields=("NMR",), random_state=500
        )
        ds = validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        draws = impute_dataset(ds, n_imputations=5, max_iter=50, seed=500)
        assert len(draws) == 5
        observed = set(ds.frame["NMR"].dropna())
        for completed in draws:
            assert completed.frame["NMR"].isnull().sum() == 0
            assert completed.n_rows == 300
            # PMM only ever borrows observed values
            assert set(completed.frame["NMR"]) <= observed

    def test_deterministic_given_seed(self):
        df = SyntheticTrialGenerator.generate(n_samples=120, missing_rate=0.2)
        ds = validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        a = impute_dataset(ds, n_imputations=2, max_iter=5, seed=11)
        b = impute_dataset(ds, n_imputations=2, max_iter=5, seed=11)
        for da, db in zip(a, b):
            pd.testing.assert_frame_equal(da.frame, db.frame)

    def test_ordinal_imputed_to_declared_levels(self):
        df = SyntheticTrialGenerator.generate(n_samples=150, missing_rate=0.2)
        ds = validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        assert ds.frame["inc"].isnull().any()
        completed = impute_dataset(ds, n_imputations=1, max_iter=5, seed=3)[0]
        assert completed.frame["inc"].notna().all()
        assert set(completed.frame["inc"]) <= {1, 2, 3, 4, 5}

    def test_sample_method(self):
        df = SyntheticTrialGenerator.generate(n_samples=100, missing_rate=0.2)
        ds = validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        completed = impute_dataset(ds, method="sample", n_imputations=1, max_iter=2)[0]
        assert completed.frame[list(SMOKING_TRIAL_SCHEMA.baseline_names)].notna().all().all()

    def test_all_missing_field_raises(self):
        df = SyntheticTrialGenerator.generate(n_samples=60, missing_rate=0.0)
        df["NMR"] = np.nan
        ds = validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        with pytest.raises(ImputationError) as exc:
            impute_dataset(ds, n_imputations=1, max_iter=2)
        assert exc.value.field == "NMR"

    def test_constant_predictors_raise(self):
        rng = np.random.RandomState(0)
        x1 = rng.normal(size=20)
        x1[:5] = np.nan
        df = pd.DataFrame({"y": 0, "t1": 0, "t2": 1, "x1": x1, "x2": 1.0})
        ds = validate_dataset(df, TINY_SCHEMA)
        with pytest.raises(ImputationError) as exc:
            impute_dataset(ds, n_imputations=1, max_iter=2, seed=1)
        assert exc.value.field == "x1"

    def test_jointly_missing_predictors_raise(self):
        rng = np.random.RandomState(1)
        df = pd.DataFrame(
            {
                "y": rng.binomial(1, 0.5, 30),
                "t1": rng.binomial(1, 0.5, 30),
                "t2": rng.binomial(1, 0.5, 30),
                "x1": rng.normal(size=30),
                "x2": rng.normal(size=30),
            }
        )
        df.loc[0, ["x1", "x2"]] = np.nan
        ds = validate_dataset(df, TINY_SCHEMA)
        with pytest.raises(ImputationError) as exc:
            impute_dataset(ds, n_imputations=1, max_iter=2, predictors=["x1", "x2"])
        assert exc.value.field == "x1"

    def test_rows_with_missing_outcome_dropped(self):
        df = SyntheticTrialGenerator.generate(n_samples=100, missing_rate=0.1)
        df["abst"] = df["abst"].astype(float)
        df.loc[:4, "abst"] = np.nan
        ds = validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        completed = impute_dataset(ds, n_imputations=1, max_iter=3)[0]
        assert completed.n_rows == 95
        assert completed.outcome.isin([0, 1]).all()
        assert any("missing outcome" in w for w in completed.warnings)

    def test_diagnostics_table(self):
        df = SyntheticTrialGenerator.generate(n_samples=120, missing_rate=0.2)
        ds = validate_dataset(df, SMOKING_TRIAL_SCHEMA)
        draws = impute_dataset(ds, n_imputations=2, max_iter=3)
        diag = imputation_diagnostics(draws, ds)
        assert set(diag["variable"]) == {"NMR", "bdi_score_w00", "crv_total_pq1"}
        assert set(diag["draw"]) == {0, 1}


class TestEncoder:
    """Tests for the feature encoder."""

    def test_standardized_on_training_data(self):
        encoded, spec = fit_encoding(_complete_dataset())
        for name in SMOKING_TRIAL_SCHEMA.names_of(CONTINUOUS):
            col = encoded.frame[name]
            assert abs(col.mean()) < 1e-9
            assert abs(col.std(ddof=0) - 1.0) < 1e-9

    def test_columns_and_dummies(self):
        _, spec = fit_encoding(_complete_dataset())
        assert spec.columns[:2] == ("Var", "BA")
        assert "inc_1" not in spec.columns
        assert [c for c in spec.columns if c.startswith("inc_")] == [
            "inc_2",
            "inc_3",
            "inc_4",
            "inc_5",
        ]
        assert "Var" not in spec.baseline_columns

    def test_new_data_uses_training_parameters(self):
        completed = _complete_dataset()
        train, test = completed.take(range(150)), completed.take(range(150, 200))
        _, spec = fit_encoding(train)
        enc_test = encode(test, spec)
        mean, scale = spec.scaling["age_ps"]
        expected = (test.frame["age_ps"] - mean) / scale
        np.testing.assert_allclose(enc_test.frame["age_ps"], expected)
        assert list(enc_test.frame.columns) == list(spec.columns)

    def test_unseen_level_error_and_zero(self):
        completed = _complete_dataset()
        _, spec = fit_encoding(completed)
        frame = completed.frame.copy()
        frame["inc"] = frame["inc"].astype(float)
        frame.loc[frame.index[0], "inc"] = 6.0
        novel = CompletedDataset(frame=frame, schema=completed.schema)

        with pytest.raises(EncodingMismatchError) as exc:
            encode(novel, spec)
        assert exc.value.field == "inc"

        zeroed = encode(novel, spec, unseen_levels="zero")
        inc_cols = [c for c in spec.columns if c.startswith("inc_")]
        assert (zeroed.frame.iloc[0][inc_cols] == 0).all()


class TestPredictorSelector:
    """Tests for cross-validated LASSO selection."""

    def test_nonzero_count_monotone_in_lambda(self):
        rng = np.random.RandomState(3)
        X = rng.normal(size=(300, 5))
        y = rng.binomial(1, expit(1.5 * X[:, 0] - 1.0 * X[:, 1]))
        top = lambda_max(X, y)
        fractions = [0.02, 0.1, 0.3, 0.6, 1.2]
        counts = lasso_path_nonzero_counts(X, y, [f * top for f in fractions])
        assert counts[-1] == 0
        assert all(a >= b for a, b in zip(counts, counts[1:]))
        assert counts[0] >= 2

    def test_cv_picks_grid_minimum(self):
        rng = np.random.RandomState(5)
        X = pd.DataFrame(rng.normal(size=(150, 4)), columns=["a", "b", "c", "d"])
        y = rng.binomial(1, expit(1.2 * X["a"]))
        result = select_predictors(X, y, n_folds=5, n_lambdas=20, seed=9)
        assert result.penalty in result.lambdas
        best_row = result.cv_table.loc[result.cv_table["lambda"] == result.penalty]
        assert best_row["mean_loss"].iloc[0] == result.cv_table["mean_loss"].min()
        assert list(result.cv_table.columns) == [
            "lambda",
            "mean_loss",
            "se_loss",
            "n_folds_used",
            "n_nonzero",
        ]

    def test_single_true_signal(self):
        rng = np.random.RandomState(2001)
        X = pd.DataFrame(
            rng.normal(size=(300, 6)), columns=["signal", "n1", "n2", "n3", "n4", "n5"]
        )
        y = rng.binomial(1, expit(2.0 * X["signal"]))
        result = select_predictors(X, y, seed=2001)
        assert "signal" in result.predictors.names
        assert len(result.predictors) < 6
        coefs = result.model.coef_series()
        assert (coefs.drop("signal") == 0.0).any()
        # Entries keep design column order and hold only non-zero coefficients
        assert list(result.predictors.names) == [c for c in X.columns if coefs[c] != 0.0]

    def test_interaction_design_fits_converge(self):
        rng = np.random.RandomState(2002)
        n = 400
        X = pd.DataFrame({"Var": rng.binomial(1, 0.5, n), "a": rng.normal(size=n), "b": rng.normal(size=n)})
        X["Var:a"] = X["Var"] * X["a"]
        X["Var:b"] = X["Var"] * X["b"]
        y = rng.binomial(1, expit(-0.5 + 0.8 * X["Var"] + 1.2 * X["Var:a"]))
        result = select_predictors(X, y, seed=2002)
        assert not [w for w in result.warnings if "iteration limit" in w]
        assert "Var:a" in result.predictors.names

    def test_degenerate_folds_excluded(self):
        rng = np.random.RandomState(8)
        X = pd.DataFrame(rng.normal(size=(40, 3)), columns=["a", "b", "c"])
        y = np.zeros(40, dtype=int)
        y[[3, 17, 31]] = 1
        result = select_predictors(X, y, n_folds=10, n_lambdas=10, seed=4)
        assert len(result.excluded_folds) >= 7
        assert (result.cv_table["n_folds_used"] == 10 - len(result.excluded_folds)).all()
        assert any("single outcome class" in w for w in result.warnings)

    def test_single_class_outcome_raises(self):
        X = pd.DataFrame(np.random.RandomState(0).normal(size=(30, 2)), columns=["a", "b"])
        with pytest.raises(SelectionError):
            select_predictors(X, np.zeros(30), n_folds=3)

    def test_auc_loss_maximizes_cv_auc(self):
        rng = np.random.RandomState(12)
        X = pd.DataFrame(rng.normal(size=(200, 4)), columns=["a", "b", "c", "d"])
        y = rng.binomial(1, expit(1.5 * X["a"] - 0.8 * X["b"]))
        result = select_predictors(X, y, n_folds=5, n_lambdas=15, seed=3, loss="auc")
        table = result.cv_table
        chosen = table.loc[table["lambda"] == result.penalty, "mean_loss"].iloc[0]
        assert chosen == table["mean_loss"].max()
        assert 0.5 < chosen <= 1.0
        assert "a" in result.predictors.names

    def test_auc_rule_on_table(self):
        table = pd.DataFrame(
            {
                "lambda": [1.0, 0.5, 0.25, 0.125],
                "mean_loss": [0.50, 0.70, 0.74, 0.73],
                "se_loss": [0.05, 0.05, 0.05, 0.05],
            }
        )
        assert choose_lambda(table, loss="auc", rule="min") == 0.25
        assert choose_lambda(table, loss="auc", rule="1se") == 0.5

    def test_one_se_rule_prefers_larger_lambda(self):
        table = pd.DataFrame(
            {
                "lambda": [1.0, 0.5, 0.25, 0.125],
                "mean_loss": [1.30, 1.05, 1.00, 1.02],
                "se_loss": [0.1, 0.1, 0.1, 0.1],
            }
        )
        assert choose_lambda(table, rule="min") == 0.25
        assert choose_lambda(table, rule="1se") == 0.5

    def test_tie_goes_to_larger_lambda(self):
        table = pd.DataFrame(
            {"lambda": [1.0, 0.5, 0.25], "mean_loss": [1.2, 1.0, 1.0], "se_loss": 0.0}
        )
        assert choose_lambda(table) == 0.5


class TestInteractionBuilder:
    """Tests for treatment x covariate design matrices."""

    def test_columns_and_products(self):
        encoded, spec = fit_encoding(_complete_dataset())
        screened = PredictorSet(entries=(("inc_2", -0.1), ("NMR", 0.3)), penalty=0.01)
        terms = design_terms(spec, screened)
        assert terms.columns == spec.treatments + spec.baseline_columns + (
            "Var:inc_2",
            "Var:NMR",
            "BA:inc_2",
            "BA:NMR",
        )
        design = build_design_matrix(encoded, terms)
        np.testing.assert_allclose(
            design.frame["BA:NMR"], encoded.frame["BA"] * encoded.frame["NMR"]
        )
        assert len(design.frame) == len(encoded.frame)

    def test_unknown_predictor_raises(self):
        _, spec = fit_encoding(_complete_dataset())
        with pytest.raises(ValueError):
            design_terms(spec, PredictorSet(entries=(("not_a_column", 1.0),), penalty=0.1))


class TestScoringAndEvaluation:
    """Tests for column alignment, splitting and ROC/AUC."""

    def test_align_zero_fills_and_ignores(self):
        model = FittedModel(
            intercept=-0.5, coefficients=(1.0, 2.0, 3.0), penalty=0.1, columns=("a", "b", "c")
        )
        frame = pd.DataFrame({"a": [1.0, 0.0, 2.0], "b": [0.5, 1.0, 0.0], "z": [9.0, 9.0, 9.0]})
        aligned, absent, extra = align_columns(frame, model.columns)
        assert absent == ["c"] and extra == ["z"]
        assert (aligned["c"] == 0.0).all()
        prob = predict_proba(model, frame)
        assert len(prob) == 3
        np.testing.assert_allclose(prob, expit(-0.5 + frame["a"] + 2.0 * frame["b"]))

    def test_split_sizes(self):
        train_idx, test_idx = split_train_test(300, 0.8, seed=123)
        assert len(train_idx) == 240
        assert len(test_idx) == 60
        assert set(train_idx).isdisjoint(test_idx)
        assert sorted(set(train_idx) | set(test_idx)) == list(range(300))

    def test_split_reproducible(self):
        a = split_train_test(100, 0.8, seed=1)
        b = split_train_test(100, 0.8, seed=1)
        np.testing.assert_array_equal(a[0], b[0])

    def test_null_model_auc(self):
        rng = np.random.RandomState(42)
        y = rng.binomial(1, 0.3, 2000)
        result = evaluate_predictions(y, rng.random_sample(2000), n_train=8000)
        assert 0.4 <= result.auc <= 0.6
        assert result.roc[0] == (0.0, 0.0)
        assert result.roc[-1] == (1.0, 1.0)
        assert result.auc_ci_low <= result.auc <= result.auc_ci_high

    def test_perfect_separation_auc(self):
        y = np.array([0, 0, 0, 1, 1, 1])
        result = evaluate_predictions(y, [0.1, 0.2, 0.3, 0.7, 0.8, 0.9], n_train=24)
        assert result.auc == 1.0

    def test_single_class_test_partition(self):
        result = evaluate_predictions(np.zeros(20), np.linspace(0.1, 0.9, 20), n_train=80)
        assert np.isnan(result.auc)
        assert result.warnings

    def test_undefined_metrics_serialize_as_null(self):
        result = evaluate_predictions(np.zeros(20), np.linspace(0.1, 0.9, 20), n_train=80)
        payload = result.to_dict()
        assert payload["auc"] is None
        assert payload["auc_ci_low"] is None and payload["auc_ci_high"] is None
        # Strict JSON: raises on NaN
        assert json.loads(json.dumps(payload, allow_nan=False))["auc"] is None


class TestBootstrapAUC:
    """Tests for the bootstrap AUC confidence interval."""

    def test_small_sample_returns_nan(self):
        low, high = bootstrap_auc_ci(np.array([0, 1] * 10), np.linspace(0, 1, 20))
        assert np.isnan(low) and np.isnan(high)

    def test_reasonable_bounds(self):
        rng = np.random.RandomState(0)
        y = rng.binomial(1, 0.4, 200)
        prob = np.clip(y * 0.3 + rng.random_sample(200) * 0.7, 0, 1)
        low, high = bootstrap_auc_ci(y, prob, n_bootstrap=200)
        assert 0.0 <= low <= high <= 1.0


class TestConfig:
    """Tests for pipeline configuration."""

    def test_defaults(self):
        cfg = PipelineConfig()
        assert cfg.n_imputations == 5
        assert cfg.max_iter == 50
        assert cfg.n_folds == 10
        assert cfg.l1_ratio == 1.0
        assert cfg.train_fraction == 0.8

    @pytest.mark.parametrize(
        "options",
        [{"n_folds": 1}, {"l1_ratio": 0.5}, {"train_fraction": 1.0}, {"analysis_draw": 5}],
    )
    def test_invalid_options(self, options):
        with pytest.raises(ValueError):
            PipelineConfig(**options)

    def test_environment_and_session_override(self, monkeypatch):
        monkeypatch.setenv("MODERATE_SEED", "7")
        assert PipelineConfig.from_session_config().seed == 7
        assert PipelineConfig.from_session_config({"seed": 9}).seed == 9
        with pytest.raises(ValueError):
            PipelineConfig.from_session_config({"not_an_option": 1})

    def test_stage_seeds(self):
        cfg = PipelineConfig(seed=1, split_seed=123)
        assert cfg.stage_seed("split") == 123
        assert cfg.stage_seed("cv") == derive_seed(1, "cv")
        assert derive_seed(1, "cv") != derive_seed(1, "imputation")


class TestAuditLog:
    """Tests for the JSONL audit trail."""

    def test_entries_and_seal(self, temp_audit_log):
        temp_audit_log.log("TEST_EVENT", {"value": np.int64(3)})
        summary = temp_audit_log.finalize_session()
        assert len(summary["integrity_hash"]) == 64
        lines = temp_audit_log.jsonl_path.read_text().strip().splitlines()
        events = [json.loads(line)["event"] for line in lines]
        assert events == ["SESSION_INIT", "TEST_EVENT", "SESSION_FINALIZED"]


class TestPipeline:
    """Tests for the pipeline state machine."""

    def test_ingest_failure_is_reported(self):
        df = SyntheticTrialGenerator.generate(n_samples=50).drop(columns=["edu"])
        ctx = run_pipeline(df, config=PipelineConfig(**FAST_TEST_CONFIG))
        assert ctx.stage is Stage.FAILED
        assert ctx.failed_stage is Stage.INGESTED
        assert isinstance(ctx.error, SchemaError)
        with pytest.raises(PipelineFailed):
            ctx.raise_for_failure()

    def test_illegal_transition(self):
        df = SyntheticTrialGenerator.generate(n_samples=50)
        ctx = ingest(df, SMOKING_TRIAL_SCHEMA, PipelineConfig())
        with pytest.raises(RuntimeError):
            ctx.advance(Stage.ENCODED)

    def test_end_to_end(self, fast_pipeline_run):
        ctx = fast_pipeline_run
        assert ctx.stage is Stage.EVALUATED, ctx.error
        assert ctx.evaluation.n_train == 160
        assert ctx.evaluation.n_test == 40
        assert ctx.completed.frame.isnull().sum().sum() == 0
        assert set(ctx.selection.model.columns) == set(ctx.terms.columns)
        corr = correlation_matrix(ctx.completed)
        assert "abst" in corr.columns

    def test_recipe_scores_without_dropping_rows(self, fast_pipeline_run):
        ctx = fast_pipeline_run
        test = ctx.completed.take(ctx.test_index)
        assert len(ctx.recipe.predict_proba(test)) == test.n_rows

    def test_export_and_reload(self, fast_pipeline_run, tmp_path):
        written = export_outputs(fast_pipeline_run, tmp_path)
        for name in ("LASSO_Pass1_Predictors", "LASSO_Pass2_Predictors", "ROC_Curve"):
            assert written[name].exists()
        payload = load_model(written["Model"])
        assert payload["columns"] == list(fast_pipeline_run.recipe.model.columns)

    def test_scoring_with_dropped_interaction_column(self, fast_pipeline_run):
        recipe = fast_pipeline_run.recipe
        test = fast_pipeline_run.completed.take(fast_pipeline_run.test_index)
        design = recipe.design_for(test).frame
        interactions = [c for _, _, c in recipe.terms.interactions]
        column = interactions[0] if interactions else "Var"
        assert column in recipe.model.columns

        reduced = design.drop(columns=[column])
        zeroed = design.copy()
        zeroed[column] = 0.0
        prob = predict_proba(recipe.model, reduced)
        assert len(prob) == test.n_rows
        np.testing.assert_allclose(prob, predict_proba(recipe.model, zeroed))

    @pytest.mark.slow
    def test_results_independent_of_n_jobs(self, fast_pipeline_run):
        parallel = run_pipeline(
            SyntheticTrialGenerator.generate(n_samples=200, missing_rate=0.1),
            config=PipelineConfig(n_jobs=2, **FAST_TEST_CONFIG),
        )
        assert parallel.stage is Stage.EVALUATED, parallel.error
        assert parallel.screening.predictors == fast_pipeline_run.screening.predictors
        assert parallel.selection.predictors == fast_pipeline_run.selection.predictors
        assert parallel.evaluation.auc == fast_pipeline_run.evaluation.auc

    @pytest.mark.slow
    def test_deterministic_end_to_end(self, fast_pipeline_run):
        again = run_pipeline(
            SyntheticTrialGenerator.generate(n_samples=200, missing_rate=0.1),
            config=PipelineConfig(**FAST_TEST_CONFIG),
        )
        first = fast_pipeline_run
        assert again.selection.predictors == first.selection.predictors
        assert again.recipe.model == first.recipe.model
        assert again.evaluation.auc == first.evaluation.auc


class TestIntegration:
    """End-to-end runs outside the state machine."""

    @pytest.mark.slow
    def test_evaluate_on_completed_data(self):
        completed = _complete_dataset(n_samples=150, random_state=21)
        recipe, result = evaluate(completed, PipelineConfig(**FAST_TEST_CONFIG))
        assert result.n_train == 120
        assert result.n_test == 30
        assert recipe.terms.treatments == ("Var", "BA")

    @pytest.mark.slow
    def test_full_pipeline(self):
        """Test full pipeline on synthetic data."""
        results = run_integration_test()
        assert results["passed"], results["errors"]


class TestCommandLine:
    """Tests for the command-line entry point."""

    def test_missing_data_file(self, tmp_path):
        with pytest.raises(SystemExit):
            main([str(tmp_path / "absent.csv")])

    @pytest.mark.parametrize("option", [["--train-fraction", "1.5"], ["--folds", "1"]])
    def test_invalid_option_reported_as_usage_error(self, tmp_path, option):
        csv_path = tmp_path / "trial.csv"
        SyntheticTrialGenerator.generate(n_samples=30).to_csv(csv_path, index=False)
        with pytest.raises(SystemExit) as exc:
            main([str(csv_path), *option])
        assert exc.value.code == 2

    @pytest.mark.slow
    def test_run_on_csv(self, tmp_path):
        csv_path = tmp_path / "trial.csv"
        SyntheticTrialGenerator.generate(n_samples=150).to_csv(csv_path, index=False)
        code = main(
            [
                str(csv_path),
                "--output",
                str(tmp_path / "out"),
                "--m",
                "1",
                "--maxit",
                "3",
                "--folds",
                "4",
            ]
        )
        assert code == 0
        assert (tmp_path / "out" / "trial_Moderation" / "Run_Summary.json").exists()


# Fixtures
@pytest.fixture(scope="module")
def fast_pipeline_run():
    """One light end-to-end run shared by the pipeline tests."""
    df = SyntheticTrialGenerator.generate(n_samples=200, missing_rate=0.1)
    return run_pipeline(df, config=PipelineConfig(**FAST_TEST_CONFIG))


@pytest.fixture
def temp_audit_log():
    """Create temporary audit log."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield AuditLog(Path(tmpdir) / "test_audit.jsonl")
