import numpy as np
import pytest
import torch

from ppo_agent import (
    PPOAgent,
    PPOError,
    PPOStateError,
    actor_loss,
    clipped_surrogate,
    importance_ratio,
    policy_loss,
    value_loss,
)


def make_agent(**overrides):
    params = {
        "min_episodes_for_update": 2,
        "batch_size": 8,
        "epochs_per_update": 2,
    }
    params.update(overrides)
    torch.manual_seed(0)
    np.random.seed(0)
    return PPOAgent(**params)


def collect_episodes(agent, episodes=2, length=10, seed=0):
    rng = np.random.default_rng(seed)
    for _ in range(episodes):
        for t in range(length):
            state = rng.uniform(0, 1, size=10).astype(np.float32)
            step = agent.act(state)
            agent.store(state, step.action, float(rng.normal()), step.value, step.log_prob, t == length - 1)


# =============================================================================
# Loss functions
# =============================================================================
def test_ratio_is_one_for_identical_policies():
    log_probs = torch.tensor([-1.3, -0.2, -4.0])
    assert torch.allclose(importance_ratio(log_probs, log_probs), torch.ones(3))


def test_stored_log_probs_reproduced_before_update():
    agent = make_agent()
    collect_episodes(agent)

    states = torch.as_tensor(np.stack(agent.buffer.states))
    actions = torch.as_tensor(np.stack(agent.buffer.actions))
    old_log_probs = torch.tensor(agent.buffer.log_probs, dtype=torch.float32)
    with torch.no_grad():
        new_log_probs = agent.model.compute_log_prob(agent.model.actor(states), actions)

    ratio = importance_ratio(new_log_probs, old_log_probs)
    assert torch.allclose(ratio, torch.ones_like(ratio), atol=1e-5)


@pytest.mark.parametrize("ratio, advantage, expected", [
    (1.5, 1.0, 1.2),     # positive advantage, ratio above the trust region: clipped
    (0.5, 1.0, 0.5),     # positive advantage, ratio below: unclipped is smaller
    (0.5, -1.0, -0.8),   # negative advantage, ratio below: clipped
    (1.5, -1.0, -1.5),   # negative advantage, ratio above: unclipped is smaller
    (1.1, 2.0, 2.2),     # inside the trust region
])
def test_clipped_surrogate(ratio, advantage, expected):
    value = clipped_surrogate(torch.tensor([ratio]), torch.tensor([advantage]), 0.2)
    assert value.item() == pytest.approx(expected)


def test_policy_loss_at_ratio_one_is_negative_mean_advantage():
    log_probs = torch.tensor([-1.0, -2.0, -3.0, -4.0])
    advantages = torch.tensor([1.0, -2.0, 3.0, 2.0])
    loss = policy_loss(log_probs, log_probs, advantages, 0.1)
    assert loss.item() == pytest.approx(-1.0)


def test_actor_loss_subtracts_entropy_bonus():
    loss = actor_loss(torch.tensor(0.5), torch.tensor(2.0), 0.01)
    assert loss.item() == pytest.approx(0.48)


def test_value_loss_is_mse():
    loss = value_loss(torch.tensor([1.0, 2.0]), torch.tensor([3.0, 2.0]))
    assert loss.item() == pytest.approx(2.0)


# =============================================================================
# Agent lifecycle
# =============================================================================
def test_error_taxonomy():
    assert issubclass(PPOStateError, PPOError)
    assert issubclass(PPOStateError, RuntimeError)


@pytest.mark.parametrize("kwargs", [
    {"gamma": 0.0},
    {"gamma": 1.5},
    {"gae_lambda": 0.0},
    {"clip_epsilon": 0.0},
    {"log_std_min": 2.0, "log_std_max": 1.0},
])
def test_invalid_configuration(kwargs):
    with pytest.raises(ValueError):
        PPOAgent(**kwargs)


def test_store_validates_shapes():
    agent = make_agent()
    with pytest.raises(ValueError):
        agent.store(np.zeros(9), [0.0], 0.0, 0.0, 0.0, False)
    with pytest.raises(ValueError):
        agent.store(np.zeros(10), [0.0, 0.0], 0.0, 0.0, 0.0, False)
    assert len(agent.buffer) == 0


def test_update_on_empty_buffer_raises():
    agent = make_agent()
    with pytest.raises(PPOStateError):
        agent.update([0.0])


def test_phase_follows_completed_episodes():
    agent = make_agent()
    assert agent.phase == PPOAgent.COLLECTING

    collect_episodes(agent, episodes=1)
    assert agent.episode_count == 1
    assert not agent.should_update()

    collect_episodes(agent, episodes=1, seed=1)
    assert agent.should_update()
    assert agent.phase == PPOAgent.READY


def test_update_cycle_resets_collection():
    agent = make_agent()
    collect_episodes(agent)
    result = agent.update([0.5, 1.5])

    assert result["update_count"] == 1
    assert result["steps"] == 20
    assert result["episodes"] == 2
    assert set(result["loss"]) == {"policy", "value", "entropy", "total"}
    assert len(agent.buffer) == 0
    assert agent.episode_count == 0
    assert agent.total_steps == 20
    assert agent.phase == PPOAgent.COLLECTING
    assert not agent.is_updating


def test_update_changes_both_networks():
    agent = make_agent()
    actor_before = [p.detach().clone() for p in agent.model.actor.parameters()]
    critic_before = [p.detach().clone() for p in agent.model.critic.parameters()]

    collect_episodes(agent)
    agent.update([])

    assert any(not torch.equal(a, p) for a, p in zip(actor_before, agent.model.actor.parameters()))
    assert any(not torch.equal(c, p) for c, p in zip(critic_before, agent.model.critic.parameters()))


@pytest.mark.parametrize("entropy_coef, bound", [(-100.0, -3.0), (100.0, 1.0)])
def test_log_std_clamped_after_update(entropy_coef, bound):
    agent = make_agent(entropy_coef=entropy_coef, lr=0.5, log_std_init=bound - 0.01 * np.sign(bound))
    collect_episodes(agent)
    agent.update([0.0])
    assert agent.get_log_std()[0] == pytest.approx(bound)


def test_mean_bootstrap():
    assert PPOAgent.mean_bootstrap([]) == 0.0
    assert PPOAgent.mean_bootstrap([1.0, 3.0]) == 2.0
    assert PPOAgent.mean_bootstrap(2.5) == 2.5
    with pytest.raises(ValueError):
        PPOAgent.mean_bootstrap([1.0, float("nan")])


def test_store_during_update_is_rejected():
    agent = make_agent()
    agent.is_updating = True
    with pytest.raises(PPOStateError):
        agent.store(np.zeros(10), [0.0], 0.0, 0.0, 0.0, False)
    with pytest.raises(PPOStateError):
        agent.act(np.zeros(10))
    with pytest.raises(PPOStateError):
        agent.update([0.0])


def test_interrupted_update_marks_agent_unusable(monkeypatch):
    agent = make_agent()
    collect_episodes(agent)

    def fail(batch):
        raise RuntimeError("boom")

    monkeypatch.setattr(agent, "_update_batch", fail)
    with pytest.raises(RuntimeError, match="boom"):
        agent.update([0.0])

    assert not agent.is_updating
    with pytest.raises(PPOStateError):
        agent.act(np.zeros(10))
    with pytest.raises(PPOStateError):
        agent.get_stats()


def test_dispose():
    agent = make_agent()
    agent.dispose()
    agent.dispose()
    with pytest.raises(PPOStateError):
        agent.act(np.zeros(10))
    with pytest.raises(PPOStateError):
        agent.store(np.zeros(10), [0.0], 0.0, 0.0, 0.0, False)


def test_stats_surface():
    agent = make_agent()
    collect_episodes(agent, episodes=1)
    stats = agent.get_stats()

    assert stats["buffer_size"] == 10
    assert stats["episode_count"] == 1
    assert stats["min_episodes"] == 2
    assert stats["update_count"] == 0
    assert stats["log_std"] == [pytest.approx(-1.0)]
    assert stats["phase"] == "collecting"
    assert stats["is_updating"] is False


def test_layer_weights_exposed():
    agent = make_agent()
    layers = agent.get_layer_weights()
    assert set(layers) == {"actor", "critic"}


def test_pretrain_steers_against_heading_error():
    agent = make_agent()
    agent.model.pretrain(num_samples=500, epochs=200, lr=1e-2)

    state = np.full(10, 0.5, dtype=np.float32)
    state[-1] = 0.8
    left = agent.act_deterministic(state)[0]
    state[-1] = -0.8
    right = agent.act_deterministic(state)[0]
    assert left < right


# =============================================================================
# Persistence
# =============================================================================
def test_save_load_round_trip(tmp_path):
    agent = make_agent()
    collect_episodes(agent)
    agent.update([0.0])
    path = tmp_path / "agent.pt"
    agent.save(str(path))

    restored = make_agent()
    restored.load(str(path))

    assert restored.update_count == 1
    assert restored.total_steps == agent.total_steps
    for key, value in agent.model.state_dict().items():
        assert torch.equal(value, restored.model.state_dict()[key])

    state = np.linspace(0, 1, 10, dtype=np.float32)
    np.testing.assert_array_equal(agent.act_deterministic(state), restored.act_deterministic(state))


def test_load_rejects_other_architecture(tmp_path):
    agent = make_agent()
    path = tmp_path / "agent.pt"
    agent.save(str(path))

    other = make_agent(hidden_units=(8,))
    with pytest.raises(ValueError):
        other.load(str(path))
