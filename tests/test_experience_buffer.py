import numpy as np
import pytest

from experience_buffer import (
    ExperienceBuffer,
    compute_gae,
    compute_mc_returns,
    normalize_advantages,
)


def fill(buffer, n, done_every=None, input_dim=10):
    for i in range(n):
        state = np.zeros(input_dim, dtype=np.float32)
        state[0] = i
        done = done_every is not None and (i + 1) % done_every == 0
        buffer.add(state, [0.1], reward=float(i % 7), value=0.5, log_prob=-1.0, done=done)


def test_mc_returns_discount_backward():
    returns = compute_mc_returns([1.0, 2.0, 3.0], [0, 0, 0], bootstrap_value=0.0, gamma=0.5)
    np.testing.assert_allclose(returns, [2.75, 3.5, 3.0])


def test_mc_returns_restart_at_episode_end():
    returns = compute_mc_returns([1.0, 2.0, 3.0], [0, 1, 0], bootstrap_value=10.0, gamma=0.5)
    np.testing.assert_allclose(returns, [2.0, 2.0, 8.0])


def test_returns_ignore_rewards_after_episode_end():
    first = compute_mc_returns([1.0, 2.0, 5.0, 7.0], [0, 1, 0, 1], 0.0, 0.9)
    second = compute_mc_returns([1.0, 2.0, -3.0, 40.0], [0, 1, 0, 1], 0.0, 0.9)
    np.testing.assert_array_equal(first[:2], second[:2])


def test_gae_zero_for_perfect_value_function():
    # V(s_t) = r_t + gamma * V(s_{t+1}) exactly, with the episode ending at t=2
    rewards = [1.0, 1.0, 1.0]
    values = [1.75, 1.5, 1.0]
    dones = [0, 0, 1]
    advantages = compute_gae(rewards, values, dones, bootstrap_value=100.0, gamma=0.5, lam=0.95)
    np.testing.assert_array_equal(advantages, [0.0, 0.0, 0.0])


def test_gae_does_not_cross_episode_boundary():
    advantages = compute_gae([0.0, 5.0], [0.0, 0.0], [1, 0], bootstrap_value=0.0, gamma=0.5, lam=1.0)
    assert advantages[0] == 0.0
    assert advantages[1] == 5.0


def test_normalize_advantages_moments():
    rng = np.random.default_rng(3)
    normalized = normalize_advantages(rng.normal(4.0, 9.0, size=500))
    assert abs(normalized.mean()) < 1e-6
    assert normalized.std() == pytest.approx(1.0, abs=1e-4)


def test_normalize_constant_advantages_is_zero():
    normalized = normalize_advantages(np.full(5, 3.0))
    np.testing.assert_array_equal(normalized, np.zeros(5))


def test_compute_sets_targets_and_mean_return():
    buffer = ExperienceBuffer()
    fill(buffer, 30, done_every=10)
    returns, advantages = buffer.compute_returns_and_advantages(0.0, gamma=0.99, lam=0.95)

    assert returns.shape == (30,)
    assert advantages.shape == (30,)
    assert abs(advantages.mean()) < 1e-6
    assert buffer.last_avg_mc_return == pytest.approx(returns.mean())


def test_add_invalidates_targets():
    buffer = ExperienceBuffer()
    fill(buffer, 4)
    buffer.compute_returns_and_advantages(0.0, 0.99, 0.95)
    fill(buffer, 1)
    assert buffer.returns is None
    assert buffer.advantages is None


def test_empty_buffer_is_graceful():
    buffer = ExperienceBuffer()
    returns, advantages = buffer.compute_returns_and_advantages(0.0, 0.99, 0.95)
    assert returns.size == 0 and advantages.size == 0
    assert buffer.get_batches(64) == []
    assert buffer.get_stats() == {"mean_reward": 0.0, "total_reward": 0.0, "episodes": 0, "steps": 0}


def test_batches_require_computed_targets():
    buffer = ExperienceBuffer()
    fill(buffer, 10)
    with pytest.raises(RuntimeError):
        buffer.get_batches(4)


def test_batch_size_must_be_positive():
    buffer = ExperienceBuffer()
    fill(buffer, 10)
    buffer.compute_returns_and_advantages(0.0, 0.99, 0.95)
    with pytest.raises(ValueError):
        buffer.get_batches(0)


@pytest.mark.parametrize("n, batch_size, expected_sizes", [
    (100, 32, [32, 32, 32]),      # trailing 4 < 16 is dropped
    (100, 40, [40, 40, 20]),      # trailing 20 == 40 / 2 is kept
    (10, 64, []),                 # single short batch is dropped
])
def test_trailing_small_batch_dropped(n, batch_size, expected_sizes):
    buffer = ExperienceBuffer()
    fill(buffer, n)
    buffer.compute_returns_and_advantages(0.0, 0.99, 0.95)
    batches = buffer.get_batches(batch_size)
    assert [len(b.states) for b in batches] == expected_sizes


def test_batches_are_disjoint_and_aligned():
    buffer = ExperienceBuffer()
    fill(buffer, 64, done_every=8)
    buffer.compute_returns_and_advantages(0.0, 0.99, 0.95)
    batches = buffer.get_batches(16, rng=np.random.default_rng(0))

    indices = np.concatenate([b.states[:, 0] for b in batches]).astype(int)
    assert sorted(indices) == list(range(64))

    for b in batches:
        idx = b.states[:, 0].astype(int)
        np.testing.assert_allclose(b.returns, buffer.returns[idx].astype(np.float32))
        np.testing.assert_allclose(b.advantages, buffer.advantages[idx].astype(np.float32))
        assert b.actions.shape == (16, 1)
        assert b.old_log_probs.shape == (16,)


def test_subsampling_keeps_every_nth_transition():
    buffer = ExperienceBuffer()
    fill(buffer, 100)
    buffer.compute_returns_and_advantages(0.0, 0.99, 0.95)
    batches = buffer.get_batches(25, subsample_ratio=2)

    indices = np.concatenate([b.states[:, 0] for b in batches]).astype(int)
    assert len(batches) == 2
    assert sorted(indices) == list(range(0, 100, 2))


def test_shuffle_is_reproducible_with_rng():
    buffer = ExperienceBuffer()
    fill(buffer, 50)
    buffer.compute_returns_and_advantages(0.0, 0.99, 0.95)
    first = buffer.get_batches(10, rng=np.random.default_rng(7))
    second = buffer.get_batches(10, rng=np.random.default_rng(7))
    for a, b in zip(first, second):
        np.testing.assert_array_equal(a.states, b.states)


def test_stats_and_clear():
    buffer = ExperienceBuffer()
    buffer.add(np.zeros(10), [0.0], 1.0, 0.0, 0.0, False)
    buffer.add(np.zeros(10), [0.0], 3.0, 0.0, 0.0, True)

    assert buffer.get_stats() == {"mean_reward": 2.0, "total_reward": 4.0, "episodes": 1, "steps": 2}

    buffer.clear()
    assert len(buffer) == 0
    assert buffer.returns is None
    assert buffer.get_batches(2) == []

    buffer.add(np.zeros(10), [0.0], 1.0, 0.0, 0.0, False)
    assert len(buffer) == 1
