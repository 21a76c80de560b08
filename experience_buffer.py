"""
Rollout storage for PPO.

Transitions are appended during collection. Once per update the buffer
computes Monte Carlo returns (critic targets) and GAE advantages (actor
targets), then hands out shuffled minibatches. After the update the whole
buffer is discarded.
"""

import logging
from typing import List, NamedTuple, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

ADVANTAGE_EPS = 1e-8


class MiniBatch(NamedTuple):
    states: np.ndarray         # (B, input_dim)
    actions: np.ndarray        # (B, action_dim)
    returns: np.ndarray        # (B,)
    advantages: np.ndarray     # (B,)
    old_log_probs: np.ndarray  # (B,)


def compute_mc_returns(
    rewards: Sequence[float],
    dones: Sequence[float],
    bootstrap_value: float,
    gamma: float
) -> np.ndarray:
    """
    Discounted Monte Carlo returns, computed backward.

    A done step restarts the sum at its own reward, so completed episodes get
    true returns and the bootstrap value only reaches the unfinished tail.
    """
    n = len(rewards)
    returns = np.zeros(n, dtype=np.float64)
    mc_return = float(bootstrap_value)

    for t in reversed(range(n)):
        if dones[t]:
            mc_return = float(rewards[t])
        else:
            mc_return = rewards[t] + gamma * mc_return
        returns[t] = mc_return

    return returns


def compute_gae(
    rewards: Sequence[float],
    values: Sequence[float],
    dones: Sequence[float],
    bootstrap_value: float,
    gamma: float,
    lam: float
) -> np.ndarray:
    """Unnormalized GAE advantages. (1 - done) cuts propagation at episode ends."""
    n = len(rewards)
    advantages = np.zeros(n, dtype=np.float64)
    gae = 0.0

    for t in reversed(range(n)):
        next_value = bootstrap_value if t == n - 1 else values[t + 1]
        not_done = 1.0 - dones[t]
        delta = rewards[t] + gamma * next_value * not_done - values[t]
        gae = delta + gamma * lam * not_done * gae
        advantages[t] = gae

    return advantages


def normalize_advantages(advantages: np.ndarray, eps: float = ADVANTAGE_EPS) -> np.ndarray:
    """Zero mean, unit (population) std. Constant input maps to zeros."""
    if advantages.size == 0:
        return advantages
    mean = advantages.mean()
    std = advantages.std() + eps
    return (advantages - mean) / std


class ExperienceBuffer:
    """Append-only transition store with on-demand return/advantage computation."""

    def __init__(self):
        self.clear()

    def clear(self):
        """Drop every transition and any derived targets."""
        self.states: List[np.ndarray] = []
        self.actions: List[np.ndarray] = []
        self.rewards: List[float] = []
        self.values: List[float] = []      # V(s) captured by the behavior policy
        self.log_probs: List[float] = []   # log pi_old(a|s), never refreshed
        self.dones: List[float] = []
        self.returns: Optional[np.ndarray] = None
        self.advantages: Optional[np.ndarray] = None
        self.last_avg_mc_return = 0.0

    def __len__(self):
        return len(self.states)

    def add(self, state, action, reward: float, value: float, log_prob: float, done: bool):
        self.states.append(np.asarray(state, dtype=np.float32))
        self.actions.append(np.asarray(action, dtype=np.float32))
        self.rewards.append(float(reward))
        self.values.append(float(value))
        self.log_probs.append(float(log_prob))
        self.dones.append(1.0 if done else 0.0)

        # Targets are stale as soon as the sequence grows
        self.returns = None
        self.advantages = None

    def compute_returns_and_advantages(self, bootstrap_value: float, gamma: float, lam: float):
        """
        Fill `returns` (Monte Carlo) and `advantages` (normalized GAE).

        The critic trains on Monte Carlo returns rather than bootstrapped
        targets so that its own estimates never feed back into its labels.

        Args:
            bootstrap_value: Value estimate used past the last transition
            gamma: Discount factor
            lam: GAE lambda

        Returns:
            Tuple of (returns, advantages)
        """
        self.returns = compute_mc_returns(self.rewards, self.dones, bootstrap_value, gamma)
        advantages = compute_gae(
            self.rewards, self.values, self.dones, bootstrap_value, gamma, lam
        )
        self.advantages = normalize_advantages(advantages)

        n = len(self.rewards)
        self.last_avg_mc_return = float(self.returns.mean()) if n else 0.0
        if n:
            logger.debug(
                f"MC returns: avgReturn={self.last_avg_mc_return:.2f}, "
                f"avgValue={np.mean(self.values):.2f}, "
                f"avgReward={np.mean(self.rewards):.3f}, n={n}"
            )

        return self.returns, self.advantages

    def get_batches(
        self,
        batch_size: int,
        subsample_ratio: int = 1,
        rng: Optional[np.random.Generator] = None
    ) -> List[MiniBatch]:
        """
        Shuffle the (optionally subsampled) buffer into disjoint minibatches.

        Args:
            batch_size: Target minibatch size
            subsample_ratio: Keep every Nth transition to decorrelate samples
            rng: Optional generator; the global numpy RNG is used otherwise

        Returns:
            List of minibatches. A trailing batch under half of batch_size is dropped.
        """
        n = len(self.states)
        if n == 0:
            return []
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if self.returns is None or self.advantages is None:
            raise RuntimeError("compute_returns_and_advantages() must run before get_batches()")

        indices = np.arange(0, n, max(1, int(subsample_ratio)))
        if rng is not None:
            indices = rng.permutation(indices)
        else:
            indices = np.random.permutation(indices)

        states = np.stack(self.states)
        actions = np.stack(self.actions)
        old_log_probs = np.asarray(self.log_probs, dtype=np.float32)

        batches = []
        for start in range(0, len(indices), batch_size):
            idx = indices[start:start + batch_size]
            if len(idx) < batch_size / 2:
                continue

            batches.append(MiniBatch(
                states=states[idx],
                actions=actions[idx],
                returns=self.returns[idx].astype(np.float32),
                advantages=self.advantages[idx].astype(np.float32),
                old_log_probs=old_log_probs[idx],
            ))

        return batches

    def get_stats(self) -> dict:
        n = len(self.rewards)
        if n == 0:
            return {"mean_reward": 0.0, "total_reward": 0.0, "episodes": 0, "steps": 0}

        total_reward = float(sum(self.rewards))
        return {
            "mean_reward": total_reward / n,
            "total_reward": total_reward,
            "episodes": int(sum(self.dones)),
            "steps": n,
        }
