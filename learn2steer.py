"""
learn2steer: a fleet of cars learning to steer with PPO.

The TrainingSession ties the racetrack environment to one shared PPOAgent:
every car acts with the same policy, keeps its own trajectory, and hands it
to the agent only when its episode is complete. Once enough episodes have
been collected the agent runs a PPO update.

Usage:
    python learn2steer.py train --steps 200000
    python learn2steer.py evaluate --episodes 5
    python learn2steer.py quick --render
"""

import random
import logging
from collections import deque
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import torch

from ppo_agent import PPOAgent, PPOStateError
from racetrack import RacetrackEnv, Track, find_leader
from steer_config import HYPERPARAMS, PPO_PARAMS

logger = logging.getLogger(__name__)

STATS_WINDOW = 100


def make_track(track_type: str = "default", track_seed: Optional[int] = None) -> Track:
    if track_type == "default":
        return Track()
    if track_type == "random":
        return Track.random(track_seed)
    raise ValueError(f"Unknown track type {track_type!r}")


def seed_everything(seed: int):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)


# =============================================================================
# TRAINING SESSION
# =============================================================================
class TrainingSession:
    """
    Owns the environment, the agent and the running statistics of one training run.

    restart() throws the agent away and starts from scratch on the same track;
    it is also the way out after an interrupted update.
    """

    def __init__(
        self,
        num_cars: int = HYPERPARAMS["num_envs"],
        track: Optional[Track] = None,
        render_mode: Optional[str] = None,
        pretrain: bool = True,
        seed: Optional[int] = None,
        agent_params: Optional[Dict[str, Any]] = None
    ):
        self.pretrain = pretrain
        self.seed = seed
        self.agent_params = dict(agent_params or {})
        self.log_every = HYPERPARAMS["log_every"]

        self.env = RacetrackEnv(num_cars=num_cars, track=track, render_mode=render_mode)
        self.agent: Optional[PPOAgent] = None
        self._build()

    def _build(self):
        self.agent = PPOAgent(**self.agent_params)
        if self.agent.input_dim != self.env.obs_dim:
            raise ValueError(
                f"Agent input_dim {self.agent.input_dim} does not match "
                f"environment observation size {self.env.obs_dim}"
            )
        if self.pretrain:
            self.agent.pretrain()

        self.total_steps = 0
        self.episodes_completed = 0
        self.laps_completed = 0
        self.best_episode_reward = -float("inf")
        self.recent_rewards = deque(maxlen=STATS_WINDOW)
        self.reward_history: List[float] = []
        self.critic_predictions = deque(maxlen=STATS_WINDOW)
        self.actual_returns = deque(maxlen=STATS_WINDOW)
        self.update_history: List[Dict[str, Any]] = []

        self.obs, _ = self.env.reset(seed=self.seed)
        for i in range(self.env.num_cars):
            self._record_critic_prediction(i)

    @property
    def gamma(self) -> float:
        return self.agent.gamma

    def _record_critic_prediction(self, index: int):
        car = self.env.cars[index]
        if car.episode_length == 0:
            car.critic_prediction = self.agent.get_value(self.obs[index])

    # -------------------------------------------------------------------------
    # Stepping
    # -------------------------------------------------------------------------
    def step(self) -> Dict[str, Any]:
        """
        Advance every car by one frame.

        Returns:
            Dict with per-car rewards, number of alive cars, the indices of
            respawned cars and the update result (None if no update ran)
        """
        active = self.env.active_mask()
        actions = np.zeros((self.env.num_cars, self.env.action_dim), dtype=np.float32)
        policy_steps = {}

        for i in np.flatnonzero(active):
            policy_step = self.agent.act(self.obs[i])
            policy_steps[i] = policy_step
            actions[i] = policy_step.action

        next_obs, rewards, terminated, truncated, info = self.env.step(actions)

        for i, policy_step in policy_steps.items():
            car = self.env.cars[i]
            reward = float(rewards[i])
            done = bool(terminated[i] or truncated[i])

            car.episode_discounted_return += self.gamma ** len(car.trajectory) * reward
            car.episode_reward += reward
            car.trajectory.append(
                (self.obs[i], policy_step.action, reward, policy_step.value, policy_step.log_prob, done)
            )

        self.total_steps += 1
        if self.total_steps % self.log_every == 0 and policy_steps:
            self._log_step(policy_steps, rewards)

        respawned = self.env.respawn_finished(self._finish_episode)
        self.obs = self.env.observations()
        for i in respawned:
            self._record_critic_prediction(i)

        update = None
        if self.agent.should_update():
            update = self.update()

        if self.env.render_mode is not None:
            self.env.hud_lines = self.hud_lines()
            self.env.render()

        return {
            "rewards": rewards,
            "alive": info["alive"],
            "respawned": respawned,
            "update": update,
        }

    def _finish_episode(self, index: int, car):
        """Flush a complete trajectory into the agent and record episode statistics."""
        if not car.trajectory:
            return

        for state, action, reward, value, log_prob, done in car.trajectory:
            self.agent.store(state, action, reward, value, log_prob, done)

        self.episodes_completed += 1
        if car.finished:
            self.laps_completed += 1

        self.recent_rewards.append(car.episode_reward)
        self.reward_history.append(car.episode_reward)
        self.best_episode_reward = max(self.best_episode_reward, car.episode_reward)
        self.critic_predictions.append(car.critic_prediction)
        self.actual_returns.append(car.episode_discounted_return)

    def update(self) -> Dict[str, Any]:
        """Run a PPO update, bootstrapping from every car still driving."""
        bootstrap_values = [
            self.agent.get_value(self.obs[i]) if car.active else 0.0
            for i, car in enumerate(self.env.cars)
        ]
        result = self.agent.update(bootstrap_values)
        result["critic_error_pct"] = self.critic_error_pct()
        self.update_history.append(result)
        return result

    def _log_step(self, policy_steps, rewards):
        i = next(iter(policy_steps))
        car = self.env.cars[i]
        policy_step = policy_steps[i]
        logger.debug(
            f"Step {self.total_steps} car {i}: "
            f"state={np.array2string(self.obs[i], precision=2)} "
            f"action={policy_step.action[0]:+.3f} mean={policy_step.mean[0]:+.3f} "
            f"reward={rewards[i]:.3f} value={policy_step.value:.3f} "
            f"progress={car.total_progress:.3f}"
        )

    def run(
        self,
        total_steps: int,
        callback: Optional[Callable[[int, Dict[str, Any]], None]] = None
    ) -> List[Dict[str, Any]]:
        """
        Step the fleet total_steps times (or until the viewer is closed).

        Args:
            total_steps: Number of frames to simulate
            callback: Called as callback(step, update_result) after every update

        Returns:
            The update results produced during this run
        """
        updates = []
        for step in range(total_steps):
            result = self.step()
            if result["update"] is not None:
                updates.append(result["update"])
                if callback is not None:
                    callback(step, result["update"])
            if self.env.quit_requested:
                break
        return updates

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------
    def critic_error_pct(self) -> float:
        """Mean absolute error of start-of-episode critic predictions, as % of mean |return|."""
        if not self.actual_returns:
            return 0.0
        predictions = np.asarray(self.critic_predictions, dtype=np.float64)
        actual = np.asarray(self.actual_returns, dtype=np.float64)
        scale = np.abs(actual).mean()
        if scale == 0:
            return 0.0
        return float(np.abs(predictions - actual).mean() / scale * 100.0)

    def average_reward(self) -> float:
        return float(np.mean(self.recent_rewards)) if self.recent_rewards else 0.0

    def hud_lines(self) -> List[str]:
        stats = self.agent.get_stats()
        _, alive = find_leader(self.env.cars)
        best = self.best_episode_reward if self.reward_history else 0.0
        return [
            f"Update: {stats['update_count']}  ({stats['phase']})",
            f"Alive: {alive}/{self.env.num_cars}",
            f"Episodes: {stats['episode_count']}/{stats['min_episodes']}",
            f"Avg reward: {self.average_reward():.1f}  Best: {best:.1f}",
            f"Laps: {self.laps_completed}",
            f"Critic error: {self.critic_error_pct():.1f}%",
            f"log_std: {stats['log_std'][0]:.3f}",
        ]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    def restart(self):
        """Dispose the agent and start over with a fresh (pretrained) one."""
        logger.info("Restarting training from scratch")
        if self.agent is not None:
            self.agent.dispose()
        self._build()

    def dispose(self):
        if self.agent is not None:
            self.agent.dispose()
            self.agent = None
        self.env.close()


# =============================================================================
# TRAINING AND EVALUATION
# =============================================================================
def train(
    total_steps: int = 200_000,
    save_path: str = "ppo_steer_model.pt",
    render: bool = False,
    track_type: str = "default",
    track_seed: Optional[int] = None,
    num_cars: int = HYPERPARAMS["num_envs"],
    seed: Optional[int] = None,
    pretrain: bool = True
) -> TrainingSession:
    """Train the shared steering policy on a fleet of cars."""
    print("=" * 60)
    print("learn2steer - PPO Training")
    print("=" * 60)
    print(f"Track type: {track_type}, seed: {track_seed}")
    print(f"Cars: {num_cars}, total steps: {total_steps:,}")
    print(f"Update every {PPO_PARAMS['min_episodes_for_update']} completed episodes")
    print("=" * 60)

    session = TrainingSession(
        num_cars=num_cars,
        track=make_track(track_type, track_seed),
        render_mode="human" if render else None,
        pretrain=pretrain,
        seed=seed
    )
    print(f"Parameters: {session.agent.model.parameter_count()}")

    def report(step: int, update: Dict[str, Any]):
        progress_pct = (step / total_steps) * 100
        print(f"[{progress_pct:5.1f}%] Update {update['update_count']} | Step {step:,} | "
              f"Episodes: {session.episodes_completed} | "
              f"Avg reward: {session.average_reward():.1f} | "
              f"Best: {session.best_episode_reward:.1f} | "
              f"Laps: {session.laps_completed} | "
              f"Critic err: {update['critic_error_pct']:.1f}%")
        print(f"    loss: policy={update['loss']['policy']:.4f}, "
              f"value={update['loss']['value']:.4f}, "
              f"entropy={update['loss']['entropy']:.4f}, "
              f"avg MC return={update['avg_mc_return']:.2f}")

    try:
        session.run(total_steps, callback=report)
    except KeyboardInterrupt:
        print("\nTraining interrupted")

    try:
        session.agent.save(save_path)
        print(f"Model saved to {save_path}")
    except PPOStateError as e:
        print(f"Model not saved: {e}")

    session.env.close()

    print("\nTraining complete!")
    print(f"Total episodes: {session.episodes_completed}")
    print(f"Total laps completed: {session.laps_completed}")
    return session


def evaluate(
    model_path: str = "ppo_steer_model.pt",
    num_episodes: int = 5,
    track_type: str = "default",
    track_seed: Optional[int] = None,
    render: bool = True,
    max_steps: int = 10_000
):
    """Drive a single car with the deterministic policy."""
    print(f"\n{'='*60}")
    print("Evaluating PPO steering policy")
    print(f"Track type: {track_type}, seed: {track_seed}")
    print("=" * 60)

    env = RacetrackEnv(
        num_cars=1,
        track=make_track(track_type, track_seed),
        render_mode="human" if render else None
    )
    agent = PPOAgent()
    try:
        agent.load(model_path)
    except (OSError, ValueError) as e:
        print(f"Error loading model: {e}")
        print("Please train a model first with: python learn2steer.py train")
        env.close()
        return 0.0, 0

    total_rewards = []
    total_laps = 0

    for ep in range(num_episodes):
        obs, _ = env.reset()
        ep_reward = 0.0
        steps = 0

        while env.cars[0].active and steps < max_steps:
            action = agent.act_deterministic(obs[0])
            obs, rewards, _, _, _ = env.step(action[None, :])
            ep_reward += float(rewards[0])
            steps += 1
            if render:
                car = env.cars[0]
                env.hud_lines = [
                    f"Episode: {ep + 1}/{num_episodes}",
                    f"Reward: {ep_reward:.1f}",
                    f"Progress: {car.display_progress * 100:.1f}%",
                ]
                env.render()
                if env.quit_requested:
                    break

        car = env.cars[0]
        laps = car.lap_count
        total_rewards.append(ep_reward)
        total_laps += laps
        outcome = "finished" if car.finished else ("crashed" if car.dead else "timeout")
        print(f"Episode {ep+1}: Reward={ep_reward:.1f}, Laps={laps}, Steps={steps} ({outcome})")

        if env.quit_requested:
            break

    env.close()
    print(f"\nAverage Reward: {np.mean(total_rewards):.1f}, Total Laps: {total_laps}")
    return float(np.mean(total_rewards)), total_laps


def main():
    """
    Main entry point.

    Modes:
        train     - Train the fleet
        evaluate  - Drive one car with a trained policy
        quick     - Short training run followed by a short evaluation
    """
    import argparse

    parser = argparse.ArgumentParser(description="learn2steer: PPO steering simulation")
    parser.add_argument(
        "mode",
        nargs="?",
        default="train",
        choices=["train", "evaluate", "quick"],
        help="Mode to run"
    )
    parser.add_argument(
        "--steps",
        type=int,
        default=200_000,
        help="Total training frames"
    )
    parser.add_argument(
        "--episodes",
        type=int,
        default=5,
        help="Number of evaluation episodes"
    )
    parser.add_argument(
        "--render",
        action="store_true",
        help="Render during training"
    )
    parser.add_argument(
        "--track",
        dest="track_type",
        type=str,
        default="default",
        choices=["default", "random"],
        help="Track type: 'default' for the built-in circuit, 'random' for procedural generation"
    )
    parser.add_argument(
        "--track-seed",
        type=int,
        default=None,
        help="Seed for reproducible track generation (only for random tracks)"
    )
    parser.add_argument(
        "--num-cars",
        type=int,
        default=HYPERPARAMS["num_envs"],
        help="Cars driving in parallel"
    )
    parser.add_argument(
        "--save-path",
        type=str,
        default="ppo_steer_model.pt",
        help="Checkpoint file"
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for python, numpy and torch"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )
    parser.add_argument(
        "--no-pretrain",
        action="store_true",
        help="Skip the behavioral cloning warm start"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    if args.seed is not None:
        seed_everything(args.seed)

    if args.mode == "train":
        train(args.steps, args.save_path, args.render, args.track_type, args.track_seed,
              args.num_cars, args.seed, not args.no_pretrain)

    elif args.mode == "evaluate":
        evaluate(args.save_path, args.episodes, args.track_type, args.track_seed)

    elif args.mode == "quick":
        quick_steps = 20_000
        train(quick_steps, args.save_path, args.render, args.track_type, args.track_seed,
              args.num_cars, args.seed, not args.no_pretrain)
        evaluate(args.save_path, 2, args.track_type, args.track_seed)


if __name__ == "__main__":
    main()
