import math

import numpy as np
import pytest
import torch

from actor_critic import LOG_2PI, ActorCritic


@pytest.fixture
def model():
    torch.manual_seed(0)
    return ActorCritic()


def random_state(seed=0):
    return np.random.default_rng(seed).uniform(0, 1, size=10).astype(np.float32)


def test_forward_shapes(model):
    means, values = model(torch.rand(5, 10))
    assert means.shape == (5, 1)
    assert values.shape == (5,)


def test_actor_output_is_bounded(model):
    means, _ = model(torch.full((3, 10), 1000.0))
    assert torch.all(means.abs() <= 1.0)


def test_act_returns_clipped_action(model):
    with torch.no_grad():
        model.log_std.fill_(1.0)
    for seed in range(20):
        step = model.act(random_state(seed))
        assert step.action.shape == (1,)
        assert -1.0 <= step.action[0] <= 1.0
        assert isinstance(step.value, float)
        assert isinstance(step.log_prob, float)


def test_act_rejects_wrong_state_length(model):
    with pytest.raises(ValueError):
        model.act(np.zeros(9))
    with pytest.raises(ValueError):
        model.get_value(np.zeros(11))


def test_act_log_prob_matches_gaussian_density(model):
    step = model.act(random_state())
    sigma = math.exp(model.get_log_std_values()[0])
    diff = step.action[0] - step.mean[0]
    expected = -0.5 * (diff ** 2 / sigma ** 2 + 2 * math.log(sigma) + LOG_2PI)
    assert step.log_prob == pytest.approx(expected, abs=1e-5)


def test_log_prob_at_mean():
    model = ActorCritic(log_std_init=0.0)
    log_prob = model.compute_log_prob(torch.zeros(1, 1), torch.zeros(1, 1))
    assert log_prob.item() == pytest.approx(-0.5 * LOG_2PI)


def test_log_prob_sums_over_action_dims():
    model = ActorCritic(action_dim=2, log_std_init=0.0)
    log_prob = model.compute_log_prob(torch.zeros(1, 2), torch.tensor([[1.0, 0.0]]))
    assert log_prob.item() == pytest.approx(-0.5 - LOG_2PI)


def test_entropy_closed_form(model):
    assert model.get_entropy() == pytest.approx(0.5 + 0.5 * LOG_2PI - 1.0)


def test_clamp_log_std(model):
    with torch.no_grad():
        model.log_std.fill_(-7.0)
    model.clamp_log_std(-3.0, 1.0)
    assert model.get_log_std_values() == [-3.0]


def test_deterministic_action_is_mean(model):
    state = random_state()
    assert model.act_deterministic(state)[0] == pytest.approx(model.act(state).mean[0])


def test_pretrain_fits_actor_only(model):
    critic_before = {k: v.clone() for k, v in model.critic.state_dict().items()}
    actor_before = {k: v.clone() for k, v in model.actor.state_dict().items()}
    log_std_before = model.get_log_std_values()

    losses = model.pretrain(num_samples=256, epochs=50, lr=1e-2)

    assert len(losses) == 50
    assert losses[-1] < losses[0]
    for k, v in model.critic.state_dict().items():
        assert torch.equal(v, critic_before[k])
    assert model.get_log_std_values() == log_std_before
    assert any(not torch.equal(v, actor_before[k]) for k, v in model.actor.state_dict().items())


def test_parameter_groups_are_disjoint(model):
    actor_ids = {id(p) for p in model.actor_parameters()}
    critic_ids = {id(p) for p in model.critic_parameters()}
    assert id(model.log_std) in actor_ids
    assert not actor_ids & critic_ids


def test_parameter_count(model):
    # actor: 10*4 + 4 + 4*1 + 1 + log_std, critic: 10*4 + 4 + 4*1 + 1
    assert model.parameter_count() == {"actor": 50, "critic": 49, "total": 99}


def test_layer_weights_snapshot(model):
    layers = model.get_layer_weights()

    assert [l["name"] for l in layers["actor"]] == ["actor_dense1", "actor_out"]
    assert [l["name"] for l in layers["critic"]] == ["critic_dense1", "critic_out"]
    assert layers["actor"][0]["weights"].shape == (10, 4)
    assert layers["actor"][1]["weights"].shape == (4, 1)
    assert layers["critic"][0]["input_size"] == 10
    assert layers["critic"][1]["output_size"] == 1

    layers["actor"][0]["weights"][:] = 123.0
    assert not torch.any(model.actor[0].weight == 123.0)


def test_initial_actor_head_is_small(model):
    head = model.get_layer_weights()["actor"][-1]
    assert np.all(np.abs(head["weights"]) <= 0.03)
    assert np.all(head["biases"] == 0.0)
