import numpy as np
import pytest

from splitlens.belief import (
    ArmStats,
    BeliefState,
    Prior,
    cvar,
    posterior,
    summarize,
)


def test_prior_from_estimate_uses_price_and_rate():
    prior = Prior.from_estimate(0.03, 80.0)

    # 10 visitors worth of evidence at a 3% rate
    assert prior.alpha == pytest.approx(0.3)
    assert prior.beta == pytest.approx(9.7)

    # Order value prior is centred on the price
    assert prior.value_rate / (prior.value_shape - 1) == pytest.approx(80.0)


def test_prior_falls_back_on_missing_or_bad_estimates():
    default = Prior.from_estimate()

    assert Prior.from_estimate(None, None) == default
    assert Prior.from_estimate(1.5, -10) == default
    assert default.alpha == pytest.approx(0.2)
    assert default.value_rate / (default.value_shape - 1) == pytest.approx(50.0)


def test_posterior_with_no_data_is_the_prior():
    prior = Prior.from_estimate()
    post = posterior(prior, ArmStats())

    assert post.alpha == prior.alpha
    assert post.beta == prior.beta
    assert post.value_shape == prior.value_shape
    assert post.value_rate == prior.value_rate


def test_posterior_counts_failures_not_impressions():
    prior = Prior.from_estimate()
    post = posterior(prior, ArmStats(impressions=100, conversions=4, revenue=200.0))

    assert post.alpha == pytest.approx(prior.alpha + 4)
    assert post.beta == pytest.approx(prior.beta + 96)
    assert post.value_shape == pytest.approx(prior.value_shape + 4)
    assert post.value_rate == pytest.approx(prior.value_rate + 200.0)


def test_zero_conversions_gives_zero_mean_rpv_but_real_uncertainty():
    post = posterior(Prior.from_estimate(), ArmStats(impressions=50))

    assert post.mean_rpv == 0.0

    draws = post.sample_rpv(np.random.default_rng(0), 1000)
    # Samples still come from the prior-informed posterior, not a point mass
    assert draws.std() > 0
    assert (draws >= 0).all()


def test_summarize_is_deterministic_for_a_seed():
    prior = Prior.from_estimate()
    control = ArmStats(500, 15, 750.0)
    variant = ArmStats(500, 18, 900.0)

    first = summarize(prior, control, variant, samples=2000, seed=7)
    second = summarize(prior, control, variant, samples=2000, seed=7)

    assert first.as_dict() == second.as_dict()


def test_summarize_example_scenario_favours_variant():
    # 1000 visitors split 500/500; variant converts 18 vs 15 at the same price
    summary = summarize(
        Prior.from_estimate(0.02, 50.0),
        ArmStats(500, 15, 750.0),
        ArmStats(500, 18, 900.0),
    )

    assert summary.probability_variant_wins > 0.5
    assert summary.probability_variant_wins < 0.9
    assert summary.mean_rpv_variant > summary.mean_rpv_control
    assert summary.probability_control_wins == pytest.approx(1 - summary.probability_variant_wins)


def test_summarize_clear_winner():
    summary = summarize(
        Prior.from_estimate(),
        ArmStats(5000, 100, 5000.0),
        ArmStats(5000, 200, 10000.0),
    )

    assert summary.probability_variant_wins > 0.95
    assert summary.probability_meaningful_lift > 0.9
    # Locking in the clear leader costs almost nothing
    assert 0 <= summary.eoc_per_1000 < 1.0


def test_summarize_identical_arms_is_a_coin_flip():
    stats = ArmStats(1000, 30, 1500.0)
    summary = summarize(Prior.from_estimate(), stats, stats, samples=8000)

    assert 0.4 < summary.probability_variant_wins < 0.6
    assert summary.mean_rpv_control == summary.mean_rpv_variant


def test_belief_state_survives_json_storage():
    prior = Prior.from_estimate(0.04, 30.0)
    control = ArmStats(10, 1, 30.0)
    variant = ArmStats(12, 2, 60.0)
    summary = summarize(prior, control, variant, samples=500)

    state = BeliefState(prior=prior).observe(control, variant, summary, updated_at="2024-01-01T00:00:00")
    restored = BeliefState.from_dict(state.to_dict())

    assert restored == state
    assert restored.summary["probability_variant_wins"] == summary.probability_variant_wins


def test_belief_state_from_empty_uses_default_prior():
    assert BeliefState.from_dict(None).prior == Prior.from_estimate()
    assert BeliefState.from_dict({}).prior == Prior.from_estimate()


def test_cvar_averages_the_lower_tail():
    draws = np.arange(100.0)

    assert cvar(draws, 0.05) == pytest.approx(2.0)
    # Never fewer than one draw
    assert cvar(np.array([3.0, 9.0]), 0.05) == pytest.approx(3.0)


def test_summary_downside_and_regret_inputs():
    summary = summarize(
        Prior.from_estimate(),
        ArmStats(5000, 100, 5000.0),
        ArmStats(5000, 200, 10000.0),
    )

    assert summary.cvar_variant > summary.cvar_control
    assert summary.variant_downside_worse is False
    assert summary.probability_meaningful_drop < 0.01
    assert summary.probability_meaningful_lift_for("control") == summary.probability_meaningful_drop
    assert summary.expected_best_rpv >= max(summary.expected_rpv_control, summary.expected_rpv_variant)
