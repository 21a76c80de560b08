"""
Racetrack simulation feeding the PPO learner.

A closed Catmull-Rom spline defines the road centerline; the road is every
point within `road_half_width` of it, so the signed distance to the road edge
is simply (distance to centerline - half width). A fleet of cars drives on
one track, each with LIDAR-style range sensors, constant throttle and a
single steering action.
"""

import math
import random
from typing import Callable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pygame
import gymnasium as gym
from gymnasium import spaces

from steer_config import HYPERPARAMS, PPO_PARAMS, TRACK_CENTERLINE

Point = Tuple[float, float]

# Colors
BACKGROUND = (5, 10, 20)
ROAD = (26, 42, 26)
ROAD_EDGE = (34, 94, 50)
START_LINE = (196, 30, 58)
CENTERLINE = (60, 70, 60)
WHITE = (255, 255, 255)
GRAY = (100, 100, 100)
YELLOW = (250, 204, 21)
RED = (255, 0, 0)


# =============================================================================
# GEOMETRY UTILITIES
# =============================================================================
def catmull_rom_point(p0: Point, p1: Point, p2: Point, p3: Point, t: float) -> Point:
    """Point on the Catmull-Rom segment between p1 and p2."""
    t2 = t * t
    t3 = t2 * t

    x = 0.5 * (
        (2 * p1[0]) +
        (-p0[0] + p2[0]) * t +
        (2*p0[0] - 5*p1[0] + 4*p2[0] - p3[0]) * t2 +
        (-p0[0] + 3*p1[0] - 3*p2[0] + p3[0]) * t3
    )
    y = 0.5 * (
        (2 * p1[1]) +
        (-p0[1] + p2[1]) * t +
        (2*p0[1] - 5*p1[1] + 4*p2[1] - p3[1]) * t2 +
        (-p0[1] + 3*p1[1] - 3*p2[1] + p3[1]) * t3
    )
    return x, y


def catmull_rom_derivative(p0: Point, p1: Point, p2: Point, p3: Point, t: float) -> Point:
    """Unnormalized tangent of the Catmull-Rom segment at t."""
    t2 = t * t

    dx = 0.5 * (
        (-p0[0] + p2[0]) +
        2 * (2*p0[0] - 5*p1[0] + 4*p2[0] - p3[0]) * t +
        3 * (-p0[0] + 3*p1[0] - 3*p2[0] + p3[0]) * t2
    )
    dy = 0.5 * (
        (-p0[1] + p2[1]) +
        2 * (2*p0[1] - 5*p1[1] + 4*p2[1] - p3[1]) * t +
        3 * (-p0[1] + 3*p1[1] - 3*p2[1] + p3[1]) * t2
    )
    return dx, dy


def normalize_angle(angle: float) -> float:
    """Wrap an angle in radians to [-pi, pi]."""
    while angle > math.pi:
        angle -= 2 * math.pi
    while angle < -math.pi:
        angle += 2 * math.pi
    return angle


def ray_circle_intersection(
    origin: Point,
    direction: Point,
    center: Point,
    radius: float
) -> Optional[float]:
    """Distance along a unit ray to a circle, or None if the ray misses it."""
    lx = center[0] - origin[0]
    ly = center[1] - origin[1]
    tca = lx * direction[0] + ly * direction[1]
    if tca < 0:
        return None

    d2 = (lx * lx + ly * ly) - tca * tca
    if d2 > radius * radius:
        return None

    thc = math.sqrt(radius * radius - d2)
    t0 = tca - thc
    if t0 < 0:
        t0 = tca + thc
    if t0 < 0:
        return None
    return t0


def generate_smooth_control_points(
    center_x: float,
    center_y: float,
    num_points: int = 8,
    base_radius: float = 700.0,
    radius_variation: float = 0.25,
    rng: Optional[random.Random] = None
) -> List[Point]:
    """
    Control points around a center with smoothed random radii.

    Adjacent radii are averaged twice so the resulting loop has no sharp
    corners the road width could fold over.
    """
    if rng is None:
        rng = random.Random()

    radius_variation = min(0.4, max(0.1, radius_variation))

    radii = [base_radius * (1 + rng.uniform(-radius_variation, radius_variation))
             for _ in range(num_points)]

    for _ in range(2):
        radii = [
            0.5 * radii[i] + 0.25 * radii[(i - 1) % num_points] + 0.25 * radii[(i + 1) % num_points]
            for i in range(num_points)
        ]

    points = []
    for i in range(num_points):
        angle = 2 * math.pi * i / num_points
        points.append((center_x + radii[i] * math.cos(angle), center_y + radii[i] * math.sin(angle)))

    return points


# =============================================================================
# SPLINE AND TRACK
# =============================================================================
class ClosedSpline:
    """Closed Catmull-Rom spline parameterized by t in [0, 1), wrapping seamlessly."""

    def __init__(self, control_points: Sequence[Point]):
        if len(control_points) < 3:
            raise ValueError("ClosedSpline requires at least 3 control points")
        self.points = [(float(x), float(y)) for x, y in control_points]

    @property
    def point_count(self) -> int:
        return len(self.points)

    def _segment(self, t: float):
        n = len(self.points)
        scaled = (t % 1.0) * n
        segment = int(math.floor(scaled))
        local_t = scaled - segment
        i = segment % n
        return (
            self.points[(i - 1) % n],
            self.points[i],
            self.points[(i + 1) % n],
            self.points[(i + 2) % n],
            local_t,
        )

    def sample(self, t: float) -> Point:
        return catmull_rom_point(*self._segment(t))

    def tangent(self, t: float) -> Point:
        dx, dy = catmull_rom_derivative(*self._segment(t))
        length = math.hypot(dx, dy)
        if length == 0:
            return 1.0, 0.0
        return dx / length, dy / length

    def normal(self, t: float) -> Point:
        """Unit normal pointing to the left of the tangent."""
        tx, ty = self.tangent(t)
        return -ty, tx


class ClosestPoint(NamedTuple):
    distance: float
    t: float
    point: Point
    tangent: Point


class StartLine(NamedTuple):
    point: Point
    tangent: Point
    normal: Point


class Track:
    """
    Road of constant half width around a closed spline centerline.

    The centerline is sampled once; distance queries use the nearest sample.
    """

    def __init__(
        self,
        control_points: Sequence[Point] = TRACK_CENTERLINE,
        half_width: float = HYPERPARAMS["road_half_width"],
        num_samples: int = HYPERPARAMS["track_samples"],
        seed: Optional[int] = None
    ):
        self.spline = ClosedSpline(control_points)
        self.half_width = half_width
        self.seed = seed

        self.sample_t = np.arange(num_samples) / num_samples
        self.sample_points = np.array([self.spline.sample(t) for t in self.sample_t])
        self.sample_tangents = np.array([self.spline.tangent(t) for t in self.sample_t])
        self.sample_normals = np.array([self.spline.normal(t) for t in self.sample_t])

    @classmethod
    def random(
        cls,
        seed: Optional[int] = None,
        half_width: float = HYPERPARAMS["road_half_width"],
        num_samples: int = HYPERPARAMS["track_samples"]
    ) -> "Track":
        """Procedural closed track from smoothed random control points."""
        base_seed = seed if seed is not None else random.randint(0, 1000000)
        rng = random.Random(base_seed)

        control_points = generate_smooth_control_points(
            0.0,
            0.0,
            num_points=rng.randint(6, 10),
            base_radius=rng.uniform(600, 800),
            radius_variation=rng.uniform(0.15, 0.3),
            rng=rng
        )
        return cls(control_points, half_width, num_samples, seed=base_seed)

    # === SDF ===

    def distances_to_road(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        """Vectorized signed distance to the road edge (negative = on road)."""
        dx = np.asarray(xs, dtype=np.float64)[:, None] - self.sample_points[None, :, 0]
        dy = np.asarray(ys, dtype=np.float64)[:, None] - self.sample_points[None, :, 1]
        return np.hypot(dx, dy).min(axis=1) - self.half_width

    def closest_point(self, x: float, y: float) -> ClosestPoint:
        d = np.hypot(self.sample_points[:, 0] - x, self.sample_points[:, 1] - y)
        i = int(np.argmin(d))
        return ClosestPoint(
            distance=float(d[i]),
            t=float(self.sample_t[i]),
            point=tuple(self.sample_points[i]),
            tangent=tuple(self.sample_tangents[i]),
        )

    def distance_to_road(self, x: float, y: float) -> float:
        return self.closest_point(x, y).distance - self.half_width

    def is_on_road(self, x: float, y: float) -> bool:
        return self.distance_to_road(x, y) <= 0

    def is_off_road(self, x: float, y: float) -> bool:
        return self.distance_to_road(x, y) > 0

    # === Progress ===

    def get_progress(self, x: float, y: float) -> float:
        return self.closest_point(x, y).t

    def get_track_direction(self, x: float, y: float) -> Point:
        return self.closest_point(x, y).tangent

    # === Sensors ===

    def raycast_to_edge(
        self,
        origin_x: float,
        origin_y: float,
        dir_x: float,
        dir_y: float,
        max_dist: float,
        step: float = 8.0,
        fine_step: float = 2.0
    ) -> float:
        """
        March along a ray until it leaves the road.

        Coarse steps first, then the last coarse interval is refined.
        """
        dists = np.arange(0.0, max_dist, step)
        sdf = self.distances_to_road(origin_x + dir_x * dists, origin_y + dir_y * dists)
        hits = np.nonzero(sdf > 0)[0]
        if hits.size == 0:
            return float(max_dist)
        if hits[0] == 0:
            return 0.0

        base = dists[hits[0]] - step
        fine = base + np.arange(0.0, step, fine_step)
        fine_sdf = self.distances_to_road(origin_x + dir_x * fine, origin_y + dir_y * fine)
        fine_hits = np.nonzero(fine_sdf > 0)[0]
        if fine_hits.size:
            return float(fine[fine_hits[0]])
        return float(base + step)

    # === Start grid ===

    def get_start_line(self) -> StartLine:
        return StartLine(
            point=self.spline.sample(0.0),
            tangent=self.spline.tangent(0.0),
            normal=self.spline.normal(0.0),
        )

    def edge_paths(self) -> Tuple[np.ndarray, np.ndarray]:
        """(left edge, right edge) polylines, one point per centerline sample."""
        offset = self.sample_normals * self.half_width
        return self.sample_points + offset, self.sample_points - offset


# =============================================================================
# CAR CLASS
# =============================================================================
class Car:
    """
    One simulated car: physics, range sensors, collisions and lap progress.

    Throttle is constant; the only control is steering in [-1, 1].
    """

    def __init__(self, car_id: int, x: float, y: float, angle: float = 0.0):
        self.id = car_id

        self.sensor_count = HYPERPARAMS["sensor_count"]
        self.sensor_length = HYPERPARAMS["sensor_length"]
        self.accel = HYPERPARAMS["car_accel"]
        self.friction = HYPERPARAMS["car_friction"]
        self.turn_speed = HYPERPARAMS["car_turn_speed"]
        self.collision_radius = HYPERPARAMS["car_collision_radius"]
        self.sensor_radius = HYPERPARAMS["car_sensor_radius"]
        self.max_speed = HYPERPARAMS["max_speed"]
        self.grace_period = HYPERPARAMS["grace_period"]
        self.max_episode_length = HYPERPARAMS["max_episode_length"]

        self.sensors = np.full(self.sensor_count, self.sensor_length)
        self.sensor_hits_car = np.zeros(self.sensor_count, dtype=bool)

        self.reset_at(x, y, angle)

    def reset_at(self, x: float, y: float, angle: float):
        """Place the car and clear all episode state."""
        self.x = x
        self.y = y
        self.angle = angle
        self.speed = 0.0

        self.dead = False
        self.finished = False
        self.timed_out = False

        self.timer = 0
        self.grace_timer = self.grace_period

        self.raw_progress = 0.0
        self.total_progress = 0.0     # Can exceed 1.0 over multiple laps
        self.progress_initialized = False
        self.lap_count = 0
        self.passed_halfway = False
        self.progress_velocity = 0.0
        self.just_completed_lap = False

        # Episode bookkeeping, filled in by the training loop
        self.episode_reward = 0.0
        self.episode_discounted_return = 0.0
        self.episode_length = 0
        self.critic_prediction = 0.0
        self.trajectory = []

        self.sensors.fill(self.sensor_length)
        self.sensor_hits_car.fill(False)

    @property
    def active(self) -> bool:
        return not (self.dead or self.finished)

    def get_state_vector(self, track: Track) -> np.ndarray:
        """
        State for the policy.

        - Range sensors normalized to [0, 1]
        - Speed normalized by max_speed
        - Signed heading error to the track direction, normalized to [-1, 1]
        """
        tx, ty = track.get_track_direction(self.x, self.y)
        heading_error = normalize_angle(self.angle - math.atan2(ty, tx))

        return np.concatenate([
            self.sensors / self.sensor_length,
            [self.speed / self.max_speed, heading_error / math.pi],
        ]).astype(np.float32)

    def apply_action(self, action: Sequence[float]):
        steer = float(action[0])
        throttle = 1.0

        self.speed += self.accel * throttle
        self.angle += steer * self.turn_speed
        self.speed *= self.friction
        self.speed = max(0.0, self.speed)  # No reverse

        self.x += math.cos(self.angle) * self.speed
        self.y += math.sin(self.angle) * self.speed

    def update(self, track: Track, other_cars: Sequence["Car"]):
        """Sensors, collisions and progress after apply_action()."""
        if not self.active:
            return

        self.timer += 1
        self.episode_length += 1
        if self.grace_timer > 0:
            self.grace_timer -= 1

        self.update_sensors(track, other_cars)
        self._check_collision(track, other_cars)
        self._update_progress(track)

        if self.max_episode_length is not None and self.timer >= self.max_episode_length:
            self.timed_out = True
            self.dead = True

    def sensor_angle(self, i: int) -> float:
        """All but the last sensor fan over the front 180 degrees; the last looks back."""
        forward = self.sensor_count - 1
        if i >= forward:
            return self.angle + math.pi
        if forward == 1:
            return self.angle
        return self.angle - math.pi / 2 + (i / (forward - 1)) * math.pi

    def update_sensors(self, track: Track, other_cars: Sequence["Car"]):
        for i in range(self.sensor_count):
            angle = self.sensor_angle(i)
            dir_x = math.cos(angle)
            dir_y = math.sin(angle)

            min_dist = track.raycast_to_edge(self.x, self.y, dir_x, dir_y, self.sensor_length)
            hits_car = False

            for car in other_cars:
                if car is self or car.dead:
                    continue
                if math.hypot(self.x - car.x, self.y - car.y) > self.sensor_length + self.sensor_radius:
                    continue

                dist = ray_circle_intersection(
                    (self.x, self.y), (dir_x, dir_y), (car.x, car.y), self.sensor_radius
                )
                if dist is not None and dist < min_dist:
                    min_dist = dist
                    hits_car = True

            self.sensors[i] = min_dist
            self.sensor_hits_car[i] = hits_car

    def _check_collision(self, track: Track, other_cars: Sequence["Car"]):
        if track.is_off_road(self.x, self.y):
            self.die()
            return

        if self.grace_timer > 0:
            return
        for car in other_cars:
            if car is self or car.dead or car.grace_timer > 0:
                continue
            if math.hypot(self.x - car.x, self.y - car.y) < self.collision_radius:
                self.die()
                car.die()
                return

    def _update_progress(self, track: Track):
        raw = track.get_progress(self.x, self.y)

        # Cars spawn just behind the start line, where raw progress is ~0.98
        if not self.progress_initialized:
            self.raw_progress = raw
            self.total_progress = raw - 1.0 if raw > 0.9 else raw
            self.progress_initialized = True
            return

        delta = raw - self.raw_progress
        if delta > 0.5:
            delta -= 1.0
        if delta < -0.5:
            delta += 1.0

        self.progress_velocity = delta
        self.total_progress += delta

        lap_progress = self.total_progress % 1.0
        if 0.4 < lap_progress < 0.6:
            self.passed_halfway = True

        new_lap_count = math.floor(self.total_progress)
        if new_lap_count > self.lap_count and self.passed_halfway:
            self.lap_count = new_lap_count
            self.passed_halfway = False
            self.just_completed_lap = True
            if self.lap_count >= 1:
                self.finished = True

        self.raw_progress = raw

    @property
    def display_progress(self) -> float:
        """Fraction of the current lap, in [0, 1)."""
        return max(0.0, self.total_progress) % 1.0

    def die(self):
        self.dead = True
        self.speed = 0.0

    def corners(self, width: float = 30.0, height: float = 18.0) -> List[Point]:
        """Four corners of the car rectangle."""
        cos_a = math.cos(self.angle)
        sin_a = math.sin(self.angle)
        hw = width / 2
        hh = height / 2

        return [
            (self.x + hw * cos_a - hh * sin_a, self.y + hw * sin_a + hh * cos_a),
            (self.x - hw * cos_a - hh * sin_a, self.y - hw * sin_a + hh * cos_a),
            (self.x - hw * cos_a + hh * sin_a, self.y - hw * sin_a - hh * cos_a),
            (self.x + hw * cos_a + hh * sin_a, self.y + hw * sin_a - hh * cos_a),
        ]


# =============================================================================
# REWARD AND SPAWNING
# =============================================================================
def compute_reward(
    car: Car,
    prev_total_progress: float,
    progress_weight: float = PPO_PARAMS["progress_weight"],
    death_penalty: float = PPO_PARAMS["death_penalty"]
) -> float:
    """Reward forward progress along the track, plus an optional crash penalty."""
    reward = (car.total_progress - prev_total_progress) * progress_weight
    if car.dead:
        reward += death_penalty
    return reward


def random_spawn_position(
    track: Track,
    start_line: Optional[StartLine] = None,
    lateral_spread: float = HYPERPARAMS["spawn_lateral_spread"],
    longitudinal_spread: float = HYPERPARAMS["spawn_longitudinal_spread"],
    attempts: int = HYPERPARAMS["spawn_attempts"],
    rng=None
) -> Tuple[float, float, float]:
    """
    Random on-road pose behind the start line, facing along the track.

    Args:
        rng: Anything with a random() method (random.Random, numpy Generator)

    Returns:
        (x, y, angle)
    """
    if start_line is None:
        start_line = track.get_start_line()
    if rng is None:
        rng = random.Random()

    (px, py), (tx, ty), (nx, ny) = start_line
    angle = math.atan2(ty, tx)

    for _ in range(attempts):
        longitudinal = -rng.random() * longitudinal_spread
        lateral = (rng.random() - 0.5) * 2 * lateral_spread

        x = px + tx * longitudinal + nx * lateral
        y = py + ty * longitudinal + ny * lateral
        if track.is_on_road(x, y):
            return x, y, angle

    return px - tx * 50, py - ty * 50, angle


def spawn_cars(track: Track, num_cars: int, rng=None) -> List[Car]:
    start_line = track.get_start_line()
    cars = []
    for i in range(num_cars):
        x, y, angle = random_spawn_position(track, start_line, rng=rng)
        cars.append(Car(i, x, y, angle))
    return cars


def find_leader(cars: Sequence[Car]) -> Tuple[Optional[Car], int]:
    """Active car furthest along its lap, and the number of active cars."""
    leader = None
    best = -math.inf
    alive = 0

    for car in cars:
        if car.active:
            alive += 1
            progress = car.lap_count + car.display_progress
            if progress > best:
                best = progress
                leader = car

    if leader is None and cars:
        leader = cars[0]

    return leader, alive


# =============================================================================
# GYMNASIUM ENVIRONMENT
# =============================================================================
class RacetrackEnv(gym.Env):
    """
    A fleet of cars on one track, stepped synchronously.

    Observations and actions carry one row per car. Cars that crash or finish
    a lap stay inactive (their actions are ignored and their rewards are 0)
    until respawn_finished() puts them back on the start grid.
    """

    metadata = {"render_modes": ["human", "rgb_array"], "render_fps": HYPERPARAMS["fps"]}

    def __init__(
        self,
        num_cars: int = HYPERPARAMS["num_envs"],
        track: Optional[Track] = None,
        render_mode: Optional[str] = None,
        progress_weight: float = PPO_PARAMS["progress_weight"],
        death_penalty: float = PPO_PARAMS["death_penalty"]
    ):
        super().__init__()

        if render_mode is not None and render_mode not in self.metadata["render_modes"]:
            raise ValueError(f"Unsupported render_mode {render_mode!r}")

        self.num_cars = num_cars
        self.track = track if track is not None else Track()
        self.render_mode = render_mode
        self.progress_weight = progress_weight
        self.death_penalty = death_penalty

        self.obs_dim = HYPERPARAMS["sensor_count"] + 2
        self.action_dim = 1

        self.observation_space = spaces.Box(
            low=-1.0, high=1.0, shape=(num_cars, self.obs_dim), dtype=np.float32
        )
        self.action_space = spaces.Box(
            low=-1.0, high=1.0, shape=(num_cars, self.action_dim), dtype=np.float32
        )

        self.cars: List[Car] = []
        self.frame = 0

        # Pygame setup (lazy initialization)
        self.screen = None
        self.clock = None
        self.font = None
        self.camera = [0.0, 0.0]
        self.hud_lines: List[str] = []
        self.quit_requested = False

    def _spawn(self, car: Car):
        x, y, angle = random_spawn_position(self.track, rng=self.np_random)
        car.reset_at(x, y, angle)
        car.update_sensors(self.track, self.cars)

    def reset(self, seed: Optional[int] = None, options: Optional[dict] = None):
        super().reset(seed=seed)

        self.cars = spawn_cars(self.track, self.num_cars, rng=self.np_random)
        for car in self.cars:
            car.update_sensors(self.track, self.cars)
        self.frame = 0

        start = self.track.get_start_line().point
        self.camera = [start[0], start[1]]

        return self.observations(), {"track_seed": self.track.seed}

    def observations(self) -> np.ndarray:
        return np.stack([car.get_state_vector(self.track) for car in self.cars])

    def active_mask(self) -> np.ndarray:
        return np.array([car.active for car in self.cars], dtype=bool)

    def step(self, actions):
        actions = np.asarray(actions, dtype=np.float32)
        if actions.shape != (self.num_cars, self.action_dim):
            raise ValueError(
                f"Actions must have shape ({self.num_cars}, {self.action_dim}), got {actions.shape}"
            )

        self.frame += 1
        active = self.active_mask()
        prev_progress = [car.total_progress for car in self.cars]
        was_initialized = [car.progress_initialized for car in self.cars]

        for car, action, is_active in zip(self.cars, actions, active):
            if is_active:
                car.apply_action(action)
        for car, is_active in zip(self.cars, active):
            if is_active:
                car.update(self.track, self.cars)

        rewards = np.zeros(self.num_cars, dtype=np.float64)
        terminated = np.zeros(self.num_cars, dtype=bool)
        truncated = np.zeros(self.num_cars, dtype=bool)

        for i, car in enumerate(self.cars):
            if not active[i]:
                continue
            # The first progress reading only sets the baseline
            prev = prev_progress[i] if was_initialized[i] else car.total_progress
            rewards[i] = compute_reward(car, prev, self.progress_weight, self.death_penalty)
            truncated[i] = car.timed_out
            terminated[i] = not car.active and not car.timed_out

        leader, alive = find_leader(self.cars)
        info = {
            "alive": alive,
            "leader": leader.id if leader is not None else None,
            "laps": [car.lap_count for car in self.cars],
            "progress": [car.total_progress for car in self.cars],
        }

        return self.observations(), rewards, terminated, truncated, info

    def respawn_finished(self, on_episode_end: Optional[Callable[[int, Car], None]] = None) -> List[int]:
        """
        Reset every crashed or finished car to a random start position.

        on_episode_end(index, car) runs before the reset so it can read the
        finished episode.
        """
        respawned = []
        for i, car in enumerate(self.cars):
            if car.active:
                continue
            if on_episode_end is not None:
                on_episode_end(i, car)
            self._spawn(car)
            respawned.append(i)
        return respawned

    # =========================================================================
    # RENDERING
    # =========================================================================
    def _to_screen(self, x: float, y: float) -> Tuple[int, int]:
        w, h = self.screen.get_size()
        return int(x - self.camera[0] + w / 2), int(y - self.camera[1] + h / 2)

    def render(self):
        if self.render_mode is None:
            return None

        if self.screen is None:
            pygame.init()
            size = (HYPERPARAMS["screen_width"], HYPERPARAMS["screen_height"])
            if self.render_mode == "human":
                self.screen = pygame.display.set_mode(size)
                pygame.display.set_caption("learn2steer - PPO")
            else:
                self.screen = pygame.Surface(size)
            self.clock = pygame.time.Clock()
            self.font = pygame.font.Font(None, 24)

        leader, _ = find_leader(self.cars)
        if leader is not None:
            smoothing = HYPERPARAMS["camera_smoothing"]
            self.camera[0] += (leader.x - self.camera[0]) * smoothing
            self.camera[1] += (leader.y - self.camera[1]) * smoothing

        self.screen.fill(BACKGROUND)
        self._draw_track()
        for car in self.cars:
            self._draw_car(car, is_leader=car is leader)
        self._draw_hud()

        if self.render_mode == "human":
            pygame.display.flip()
            self.clock.tick(self.metadata["render_fps"])

            for event in pygame.event.get():
                if event.type == pygame.QUIT:
                    self.quit_requested = True
            return None

        return np.transpose(pygame.surfarray.array3d(self.screen), axes=(1, 0, 2))

    def _draw_track(self):
        left, right = self.track.edge_paths()
        n = len(left)
        left_px = [self._to_screen(x, y) for x, y in left]
        right_px = [self._to_screen(x, y) for x, y in right]

        for i in range(n):
            j = (i + 1) % n
            pygame.draw.polygon(self.screen, ROAD, [left_px[i], left_px[j], right_px[j], right_px[i]])

        pygame.draw.lines(self.screen, ROAD_EDGE, True, left_px, 6)
        pygame.draw.lines(self.screen, ROAD_EDGE, True, right_px, 6)

        center_px = [self._to_screen(x, y) for x, y in self.track.sample_points]
        pygame.draw.lines(self.screen, CENTERLINE, True, center_px, 1)

        (px, py), _, (nx, ny) = self.track.get_start_line()
        hw = self.track.half_width
        pygame.draw.line(
            self.screen, START_LINE,
            self._to_screen(px - nx * hw, py - ny * hw),
            self._to_screen(px + nx * hw, py + ny * hw),
            6
        )

    def _draw_car(self, car: Car, is_leader: bool):
        if is_leader and car.active:
            for i, dist in enumerate(car.sensors):
                angle = car.sensor_angle(i)
                end = (car.x + math.cos(angle) * dist, car.y + math.sin(angle) * dist)
                if car.sensor_hits_car[i]:
                    color = YELLOW
                elif dist < 40:
                    color = RED
                else:
                    color = (70, 70, 70)
                pygame.draw.line(self.screen, color, self._to_screen(car.x, car.y), self._to_screen(*end), 1)

        if car.dead:
            color = GRAY
        elif car.finished:
            color = YELLOW
        else:
            color = pygame.Color(0)
            color.hsla = (min(240.0, max(0.0, car.display_progress * 240.0)), 85, 50, 100)

        corners = [self._to_screen(x, y) for x, y in car.corners()]
        pygame.draw.polygon(self.screen, color, corners)
        if is_leader and car.active:
            pygame.draw.polygon(self.screen, WHITE, corners, 2)

    def _draw_hud(self):
        for i, text in enumerate(self.hud_lines):
            surface = self.font.render(text, True, WHITE)
            self.screen.blit(surface, (10, 10 + i * 20))

    def close(self):
        if self.screen is not None:
            pygame.quit()
            self.screen = None
