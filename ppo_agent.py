"""
PPO agent for the steering policy.

The agent owns one ActorCritic, one ExperienceBuffer and two independent Adam
optimizers (actor + log_std, critic). The surrounding simulation calls
act/store every step and update() once enough complete episodes have been
stored.

Update cycle: collecting -> ready -> updating -> collecting.
"""

import logging
from typing import Any, Dict, List, Sequence, Union

import numpy as np
import torch
import torch.optim as optim

from actor_critic import ActorCritic, PolicyStep
from experience_buffer import ExperienceBuffer, MiniBatch
from steer_config import PPO_PARAMS

logger = logging.getLogger(__name__)


class PPOError(Exception):
    """Base class for agent errors."""


class PPOStateError(PPOError, RuntimeError):
    """The agent was called in a state its update cycle does not allow."""


# =============================================================================
# LOSS FUNCTIONS
# =============================================================================
def importance_ratio(new_log_probs: torch.Tensor, old_log_probs: torch.Tensor) -> torch.Tensor:
    """pi(a|s) / pi_old(a|s), from log densities."""
    return torch.exp(new_log_probs - old_log_probs)


def clipped_surrogate(ratio: torch.Tensor, advantages: torch.Tensor, clip_epsilon: float) -> torch.Tensor:
    """
    Per-sample PPO objective: min(ratio * A, clip(ratio, 1 - eps, 1 + eps) * A).

    When ratio and advantage push the same way past the trust region the
    clipped term wins; when they disagree the unclipped term is kept.
    """
    surr1 = ratio * advantages
    surr2 = torch.clamp(ratio, 1.0 - clip_epsilon, 1.0 + clip_epsilon) * advantages
    return torch.min(surr1, surr2)


def policy_loss(
    new_log_probs: torch.Tensor,
    old_log_probs: torch.Tensor,
    advantages: torch.Tensor,
    clip_epsilon: float
) -> torch.Tensor:
    ratio = importance_ratio(new_log_probs, old_log_probs)
    return -clipped_surrogate(ratio, advantages, clip_epsilon).mean()


def actor_loss(policy_loss_value: torch.Tensor, entropy: torch.Tensor, entropy_coef: float) -> torch.Tensor:
    """Policy loss minus the entropy bonus."""
    return policy_loss_value - entropy_coef * entropy


def value_loss(values: torch.Tensor, returns: torch.Tensor) -> torch.Tensor:
    return ((values - returns) ** 2).mean()


# =============================================================================
# AGENT
# =============================================================================
class PPOAgent:
    """
    Proximal Policy Optimization with separate actor and critic networks.

    Because the networks share nothing and each has its own optimizer, the
    value-loss coefficient of shared-network PPO has no effect here. It is
    kept only as a reported setting.
    """

    COLLECTING = "collecting"
    READY = "ready"
    UPDATING = "updating"

    def __init__(
        self,
        input_dim: int = PPO_PARAMS["input_dim"],
        action_dim: int = PPO_PARAMS["action_dim"],
        hidden_units: Sequence[int] = PPO_PARAMS["hidden_units"],
        lr: float = PPO_PARAMS["learning_rate"],
        gamma: float = PPO_PARAMS["gamma"],
        gae_lambda: float = PPO_PARAMS["gae_lambda"],
        clip_epsilon: float = PPO_PARAMS["clip_epsilon"],
        entropy_coef: float = PPO_PARAMS["entropy_coef"],
        value_coef: float = PPO_PARAMS["value_coef"],
        batch_size: int = PPO_PARAMS["batch_size"],
        epochs_per_update: int = PPO_PARAMS["epochs_per_update"],
        min_episodes_for_update: int = PPO_PARAMS["min_episodes_for_update"],
        subsample_ratio: int = PPO_PARAMS["subsample_ratio"],
        log_std_init: float = PPO_PARAMS["log_std_init"],
        log_std_min: float = PPO_PARAMS["log_std_min"],
        log_std_max: float = PPO_PARAMS["log_std_max"],
    ):
        if not 0.0 < gamma <= 1.0:
            raise ValueError(f"gamma must be in (0, 1], got {gamma}")
        if not 0.0 < gae_lambda <= 1.0:
            raise ValueError(f"gae_lambda must be in (0, 1], got {gae_lambda}")
        if clip_epsilon <= 0.0:
            raise ValueError(f"clip_epsilon must be positive, got {clip_epsilon}")
        if log_std_min > log_std_max:
            raise ValueError("log_std_min must not exceed log_std_max")

        self.input_dim = input_dim
        self.action_dim = action_dim
        self.hidden_units = tuple(hidden_units)
        self.lr = lr
        self.gamma = gamma
        self.gae_lambda = gae_lambda
        self.clip_epsilon = clip_epsilon
        self.entropy_coef = entropy_coef
        self.value_coef = value_coef
        self.batch_size = batch_size
        self.epochs_per_update = epochs_per_update
        self.min_episodes_for_update = min_episodes_for_update
        self.subsample_ratio = subsample_ratio
        self.log_std_min = log_std_min
        self.log_std_max = log_std_max

        self.model = ActorCritic(input_dim, action_dim, self.hidden_units, log_std_init)
        self.model.clamp_log_std(log_std_min, log_std_max)
        self.buffer = ExperienceBuffer()

        self.actor_optimizer = optim.Adam(self.model.actor_parameters(), lr=lr)
        self.critic_optimizer = optim.Adam(self.model.critic_parameters(), lr=lr)

        # Training stats
        self.update_count = 0
        self.total_steps = 0
        self.episode_count = 0   # Completed episodes since the last update
        self.is_updating = False
        self.last_loss = {"policy": 0.0, "value": 0.0, "entropy": 0.0, "total": 0.0}

        self._disposed = False
        self._corrupted = False

    # -------------------------------------------------------------------------
    # Lifecycle checks
    # -------------------------------------------------------------------------
    def _check_usable(self):
        if self._disposed:
            raise PPOStateError("Agent has been disposed")
        if self._corrupted:
            raise PPOStateError(
                "A previous update was interrupted; parameters are undefined. Restart training."
            )

    def _check_not_updating(self, operation: str):
        if self.is_updating:
            raise PPOStateError(f"{operation}() called while an update is in progress")

    def _check_vector(self, name: str, vector, dim: int) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32)
        if arr.shape != (dim,):
            raise ValueError(f"{name} must have shape ({dim},), got {arr.shape}")
        return arr

    @property
    def phase(self) -> str:
        if self.is_updating:
            return self.UPDATING
        if self.should_update():
            return self.READY
        return self.COLLECTING

    # -------------------------------------------------------------------------
    # Collection
    # -------------------------------------------------------------------------
    def act(self, state) -> PolicyStep:
        """Sample an action from the behavior policy."""
        self._check_usable()
        self._check_not_updating("act")
        return self.model.act(state)

    def act_deterministic(self, state) -> np.ndarray:
        self._check_usable()
        return self.model.act_deterministic(state)

    def get_value(self, state) -> float:
        self._check_usable()
        return self.model.get_value(state)

    def store(self, state, action, reward: float, value: float, log_prob: float, done: bool):
        """Append one transition. value and log_prob must come from act() at collection time."""
        self._check_usable()
        self._check_not_updating("store")
        state = self._check_vector("state", state, self.input_dim)
        action = self._check_vector("action", action, self.action_dim)

        self.buffer.add(state, action, reward, value, log_prob, done)
        self.total_steps += 1
        if done:
            self.episode_count += 1

    def should_update(self) -> bool:
        return self.episode_count >= self.min_episodes_for_update

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------
    @staticmethod
    def mean_bootstrap(bootstrap_values: Union[float, Sequence[float]]) -> float:
        """Average per-agent bootstrap values into one tail value (0 when none are given)."""
        values = np.atleast_1d(np.asarray(bootstrap_values, dtype=np.float64))
        if values.size == 0:
            return 0.0
        if not np.all(np.isfinite(values)):
            raise ValueError("Bootstrap values must be finite")
        return float(values.mean())

    def update(self, bootstrap_values: Union[float, Sequence[float]]) -> Dict[str, Any]:
        """
        Run one full PPO update over the buffer, then clear it.

        All active agents share one bootstrap value: the mean of their
        critic estimates.

        Args:
            bootstrap_values: Critic values of every still-running agent (or a scalar)

        Returns:
            Dict with update count, buffer statistics, last losses and average MC return
        """
        self._check_usable()
        self._check_not_updating("update")
        if len(self.buffer) == 0:
            raise PPOStateError("update() called with an empty experience buffer")

        bootstrap = self.mean_bootstrap(bootstrap_values)

        self.is_updating = True
        try:
            self.buffer.compute_returns_and_advantages(bootstrap, self.gamma, self.gae_lambda)

            steps = 0
            for _ in range(self.epochs_per_update):
                for batch in self.buffer.get_batches(self.batch_size, self.subsample_ratio):
                    self._update_batch(batch)
                    steps += 1

            if steps == 0:
                logger.warning(
                    f"Buffer of {len(self.buffer)} transitions produced no minibatches "
                    f"of size >= {self.batch_size / 2:g}; parameters unchanged"
                )
        except BaseException:
            self._corrupted = True
            self.is_updating = False
            raise

        self.update_count += 1
        stats = self.buffer.get_stats()
        avg_mc_return = self.buffer.last_avg_mc_return

        self.buffer.clear()
        self.episode_count = 0
        self.is_updating = False

        logger.info(
            f"PPO update #{self.update_count}: "
            f"policy={self.last_loss['policy']:.6f} value={self.last_loss['value']:.6f} "
            f"total={self.last_loss['total']:.6f} entropy={self.last_loss['entropy']:.4f} "
            f"mean_reward={stats['mean_reward']:.4f}"
        )

        return {
            "update_count": self.update_count,
            **stats,
            "loss": dict(self.last_loss),
            "avg_mc_return": avg_mc_return,
        }

    def _update_batch(self, batch: MiniBatch):
        states = torch.as_tensor(batch.states, dtype=torch.float32)
        actions = torch.as_tensor(batch.actions, dtype=torch.float32)
        returns = torch.as_tensor(batch.returns, dtype=torch.float32)
        advantages = torch.as_tensor(batch.advantages, dtype=torch.float32)
        old_log_probs = torch.as_tensor(batch.old_log_probs, dtype=torch.float32)

        # Actor: clipped surrogate + entropy bonus, on actor weights and log_std
        means = self.model.actor(states)
        new_log_probs = self.model.compute_log_prob(means, actions)
        p_loss = policy_loss(new_log_probs, old_log_probs, advantages, self.clip_epsilon)
        entropy = self.model.entropy_tensor()
        a_loss = actor_loss(p_loss, entropy, self.entropy_coef)

        self.actor_optimizer.zero_grad()
        a_loss.backward()
        self.actor_optimizer.step()
        self.model.clamp_log_std(self.log_std_min, self.log_std_max)

        # Critic: regression onto Monte Carlo returns
        values = self.model.critic(states).squeeze(-1)
        v_loss = value_loss(values, returns)

        self.critic_optimizer.zero_grad()
        v_loss.backward()
        self.critic_optimizer.step()

        self.last_loss = {
            "policy": p_loss.item(),
            "value": v_loss.item(),
            "entropy": entropy.item(),
            "total": p_loss.item() + v_loss.item(),
        }

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------
    def pretrain(
        self,
        num_samples: int = PPO_PARAMS["pretrain_samples"],
        epochs: int = PPO_PARAMS["pretrain_epochs"],
    ) -> List[float]:
        self._check_usable()
        self._check_not_updating("pretrain")
        return self.model.pretrain(num_samples, epochs)

    def get_log_std(self) -> List[float]:
        self._check_usable()
        return self.model.get_log_std_values()

    def get_layer_weights(self) -> Dict[str, List[Dict[str, Any]]]:
        self._check_usable()
        return self.model.get_layer_weights()

    def get_stats(self) -> Dict[str, Any]:
        self._check_usable()
        return {
            "update_count": self.update_count,
            "total_steps": self.total_steps,
            "buffer_size": len(self.buffer),
            "episode_count": self.episode_count,
            "min_episodes": self.min_episodes_for_update,
            "last_loss": dict(self.last_loss),
            "log_std": self.get_log_std(),
            "is_updating": self.is_updating,
            "phase": self.phase,
        }

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    def save(self, path: str):
        """Save networks, optimizers and counters."""
        self._check_usable()
        self._check_not_updating("save")
        torch.save({
            "model_state_dict": self.model.state_dict(),
            "actor_optimizer_state_dict": self.actor_optimizer.state_dict(),
            "critic_optimizer_state_dict": self.critic_optimizer.state_dict(),
            "update_count": self.update_count,
            "total_steps": self.total_steps,
            "architecture": {
                "input_dim": self.input_dim,
                "action_dim": self.action_dim,
                "hidden_units": list(self.hidden_units),
            },
        }, path)
        logger.info(f"Agent saved to {path}")

    def load(self, path: str):
        """Load a checkpoint written by save(). The architecture must match."""
        self._check_usable()
        self._check_not_updating("load")
        checkpoint = torch.load(path, map_location="cpu")

        arch = checkpoint["architecture"]
        expected = {
            "input_dim": self.input_dim,
            "action_dim": self.action_dim,
            "hidden_units": list(self.hidden_units),
        }
        if arch != expected:
            raise ValueError(f"Checkpoint architecture {arch} does not match agent {expected}")

        self.model.load_state_dict(checkpoint["model_state_dict"])
        self.actor_optimizer.load_state_dict(checkpoint["actor_optimizer_state_dict"])
        self.critic_optimizer.load_state_dict(checkpoint["critic_optimizer_state_dict"])
        self.update_count = checkpoint["update_count"]
        self.total_steps = checkpoint["total_steps"]
        logger.info(f"Agent loaded from {path}")

    def dispose(self):
        """Release the networks, optimizers and buffer. The agent is unusable afterwards."""
        if self._disposed:
            return
        self._check_not_updating("dispose")
        self.buffer.clear()
        self.actor_optimizer.state.clear()
        self.critic_optimizer.state.clear()
        self.model = None
        self.actor_optimizer = None
        self.critic_optimizer = None
        self._disposed = True
