"""
Actor-Critic networks for continuous steering.

The actor (policy mean) and the critic (state value) are two separate MLPs
with no shared trunk, so value-function gradients never reshape the policy's
features. Exploration noise comes from a free log-std vector that does not
depend on the state.
"""

import math
import logging
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F
import torch.optim as optim

from steer_config import PPO_PARAMS

logger = logging.getLogger(__name__)

LOG_2PI = math.log(2.0 * math.pi)


class PolicyStep(NamedTuple):
    """Output of one policy query on a single state."""
    action: np.ndarray
    value: float
    log_prob: float
    mean: np.ndarray


def build_mlp(
    input_dim: int,
    hidden_units: Sequence[int],
    output_dim: int,
    output_activation: Optional[nn.Module] = None
) -> nn.Sequential:
    """Dense layers with tanh-approximated GELU after every hidden layer."""
    layers: List[nn.Module] = []
    in_dim = input_dim
    for units in hidden_units:
        layers += [nn.Linear(in_dim, units), nn.GELU(approximate="tanh")]
        in_dim = units
    layers.append(nn.Linear(in_dim, output_dim))
    if output_activation is not None:
        layers.append(output_activation)
    return nn.Sequential(*layers)


def linear_layers(net: nn.Sequential) -> List[nn.Linear]:
    return [m for m in net if isinstance(m, nn.Linear)]


class ActorCritic(nn.Module):
    """
    Separate policy and value networks plus a learnable log standard deviation.

    Actor: input -> [Linear -> GELU]* -> Linear -> tanh  (action mean in [-1, 1])
    Critic: input -> [Linear -> GELU]* -> Linear         (unbounded value)
    """

    def __init__(
        self,
        input_dim: int = PPO_PARAMS["input_dim"],
        action_dim: int = PPO_PARAMS["action_dim"],
        hidden_units: Sequence[int] = PPO_PARAMS["hidden_units"],
        log_std_init: float = PPO_PARAMS["log_std_init"],
        action_low: float = PPO_PARAMS["action_low"],
        action_high: float = PPO_PARAMS["action_high"],
    ):
        super().__init__()

        self.input_dim = input_dim
        self.action_dim = action_dim
        self.hidden_units = tuple(hidden_units)
        self.action_low = action_low
        self.action_high = action_high

        self.actor = build_mlp(input_dim, self.hidden_units, action_dim, nn.Tanh())
        self.critic = build_mlp(input_dim, self.hidden_units, 1)

        self.log_std = nn.Parameter(torch.full((action_dim,), float(log_std_init)))

        self._init_weights()

    def _init_weights(self):
        for net in (self.actor, self.critic):
            for layer in linear_layers(net):
                nn.init.kaiming_normal_(layer.weight, nonlinearity="relu")
                nn.init.zeros_(layer.bias)

        # Near-zero actor head: the initial policy steers almost straight
        nn.init.uniform_(linear_layers(self.actor)[-1].weight, -0.03, 0.03)
        nn.init.xavier_uniform_(linear_layers(self.critic)[-1].weight)

    def _state_tensor(self, state) -> torch.Tensor:
        arr = np.asarray(state, dtype=np.float32)
        if arr.shape != (self.input_dim,):
            raise ValueError(
                f"State must have shape ({self.input_dim},), got {arr.shape}"
            )
        return torch.tensor(arr).unsqueeze(0)

    def forward(self, states: torch.Tensor):
        """Batched forward pass. Returns (action means, values)."""
        return self.actor(states), self.critic(states).squeeze(-1)

    def act(self, state) -> PolicyStep:
        """Sample a clipped action for one state and evaluate the critic on it."""
        s = self._state_tensor(state)

        with torch.no_grad():
            mean = self.actor(s)
            value = self.critic(s)[0, 0]
            std = self.log_std.exp()
            sample = mean + std * torch.randn_like(mean)
            action = sample.clamp(self.action_low, self.action_high)
            # Uses the unclipped Gaussian density at the clipped action. The
            # probability mass that clipping moves onto the bounds is ignored.
            log_prob = self.compute_log_prob(mean, action)[0]

        return PolicyStep(
            action=action[0].numpy().copy(),
            value=float(value),
            log_prob=float(log_prob),
            mean=mean[0].numpy().copy(),
        )

    def act_deterministic(self, state) -> np.ndarray:
        s = self._state_tensor(state)
        with torch.no_grad():
            return self.actor(s)[0].numpy().copy()

    def get_value(self, state) -> float:
        """Critic estimate for one state (bootstrap and episode-start queries)."""
        s = self._state_tensor(state)
        with torch.no_grad():
            return float(self.critic(s)[0, 0])

    def compute_log_prob(self, means: torch.Tensor, actions: torch.Tensor) -> torch.Tensor:
        """
        Diagonal Gaussian log density of a batch of actions under the current log-std.

        Args:
            means: (N, action_dim) policy means
            actions: (N, action_dim) realized actions

        Returns:
            (N,) log densities summed over action dimensions
        """
        log_std = self.log_std
        variance = torch.exp(2.0 * log_std)
        diff = actions - means
        per_dim = -0.5 * (diff.pow(2) / variance + 2.0 * log_std + LOG_2PI)
        return per_dim.sum(dim=-1)

    def entropy_tensor(self) -> torch.Tensor:
        """Differential entropy of the policy, differentiable w.r.t. log_std."""
        return (0.5 + 0.5 * LOG_2PI + self.log_std).sum()

    def get_entropy(self) -> float:
        with torch.no_grad():
            return float(self.entropy_tensor())

    def clamp_log_std(self, low: float, high: float):
        with torch.no_grad():
            self.log_std.clamp_(low, high)

    def actor_parameters(self) -> List[nn.Parameter]:
        """Parameters moved by the policy optimizer (actor weights and log_std)."""
        return list(self.actor.parameters()) + [self.log_std]

    def critic_parameters(self) -> List[nn.Parameter]:
        return list(self.critic.parameters())

    def pretrain(
        self,
        num_samples: int = PPO_PARAMS["pretrain_samples"],
        epochs: int = PPO_PARAMS["pretrain_epochs"],
        lr: float = PPO_PARAMS["pretrain_lr"],
        gain: float = PPO_PARAMS["pretrain_gain"],
    ) -> List[float]:
        """
        Behavioral cloning of a counter-steer heuristic into the actor mean.

        Synthetic states have uniform sensor and speed readings in [0, 1] and a
        heading error in [-1, 1]; the target steering is -gain * heading_error.
        Only the actor's weights are fitted. The critic and log_std are left
        exactly as they were.

        Returns:
            Per-epoch MSE losses
        """
        if self.input_dim < 2:
            raise ValueError("Pretraining needs at least speed and heading inputs")

        logger.info("Pretraining actor with behavioral cloning...")

        sensors = torch.rand(num_samples, self.input_dim - 2)
        speed = torch.rand(num_samples, 1)
        heading_error = torch.rand(num_samples, 1) * 2.0 - 1.0
        states = torch.cat([sensors, speed, heading_error], dim=1)

        targets = torch.zeros(num_samples, self.action_dim)
        targets[:, 0] = (-gain * heading_error[:, 0]).clamp(self.action_low, self.action_high)

        optimizer = optim.Adam(self.actor.parameters(), lr=lr)
        losses = []

        for epoch in range(epochs):
            loss = F.mse_loss(self.actor(states), targets)
            optimizer.zero_grad()
            loss.backward()
            optimizer.step()

            losses.append(loss.item())
            if epoch % 5 == 0:
                logger.info(f"  Pretrain epoch {epoch + 1}/{epochs}, loss: {loss.item():.4f}")

        logger.info("Actor pretraining complete")
        return losses

    def get_log_std_values(self) -> List[float]:
        return self.log_std.detach().cpu().tolist()

    def get_layer_weights(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Read-only snapshot of every dense layer, for introspection and plotting.

        Kernels are returned as (input_size, output_size) numpy copies.
        """
        snapshot = {}
        for prefix, net in (("actor", self.actor), ("critic", self.critic)):
            layers = linear_layers(net)
            entries = []
            for i, layer in enumerate(layers):
                name = f"{prefix}_out" if i == len(layers) - 1 else f"{prefix}_dense{i + 1}"
                kernel = layer.weight.detach().cpu().numpy().T.copy()
                entries.append({
                    "name": name,
                    "weights": kernel,
                    "biases": layer.bias.detach().cpu().numpy().copy(),
                    "input_size": layer.in_features,
                    "output_size": layer.out_features,
                })
            snapshot[prefix] = entries
        return snapshot

    def parameter_count(self) -> Dict[str, int]:
        actor = sum(p.numel() for p in self.actor_parameters())
        critic = sum(p.numel() for p in self.critic_parameters())
        return {"actor": actor, "critic": critic, "total": actor + critic}
