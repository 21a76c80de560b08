"""
Hyperparameters for the learn2steer PPO simulation.

Two dictionaries are kept apart: HYPERPARAMS describes the simulated world
(cars, sensors, track), PPO_PARAMS describes the learner. Constructors read
their defaults from here, so a single value can be overridden per instance.
"""

# =============================================================================
# SIMULATION (Tunable)
# =============================================================================
HYPERPARAMS = {
    # Parallel environments
    "num_envs": 24,                  # Cars stepped together each frame

    # Sensors
    "sensor_count": 8,               # 7 forward rays over 180deg + 1 rear ray
    "sensor_length": 600.0,          # Max sensor range (pixels)

    # Track
    "road_half_width": 135.0,        # Distance from centerline to road edge
    "track_samples": 200,            # Centerline samples used by the SDF

    # Physics
    "car_accel": 0.44,               # Speed gained per frame at full throttle
    "car_friction": 0.96,            # Speed multiplier per frame
    "car_turn_speed": 0.24,          # Radians per frame at full steering
    "car_collision_radius": 22.0,    # Car-car collision distance
    "car_sensor_radius": 15.0,       # Radius other cars present to sensors
    "max_speed": 12.0,               # Approximate top speed, for normalization

    # Episodes
    "grace_period": 60,              # Frames after spawn without car-car collisions
    "max_episode_length": None,      # None = only die from collisions

    # Random spawn
    "spawn_lateral_spread": 60.0,
    "spawn_longitudinal_spread": 200.0,
    "spawn_attempts": 50,

    # Viewer
    "screen_width": 1280,
    "screen_height": 800,
    "fps": 60,
    "camera_smoothing": 0.1,

    # Logging
    "log_every": 100,                # Steps between debug step summaries
}

# =============================================================================
# PPO (Tunable)
# =============================================================================
PPO_PARAMS = {
    # Network architecture
    "input_dim": HYPERPARAMS["sensor_count"] + 2,  # sensors + speed + heading error
    "action_dim": 1,                 # Steering only, throttle is constant
    "hidden_units": (4,),            # Tiny network

    # Algorithm
    "gamma": 0.995,                  # Discount factor (long horizon)
    "gae_lambda": 0.95,              # GAE lambda
    "clip_epsilon": 0.1,             # Trust region on the probability ratio
    "entropy_coef": 0.01,            # Entropy bonus coefficient
    "value_coef": 10.0,              # Unused: actor and critic have separate optimizers

    # Training
    "learning_rate": 3e-4,
    "batch_size": 64,
    "epochs_per_update": 10,
    "min_episodes_for_update": 20,   # Completed episodes that trigger an update
    "subsample_ratio": 1,            # Use every Nth transition (1 = all)

    # Policy distribution
    "log_std_init": -1.0,            # std ~= 0.37
    "log_std_min": -3.0,
    "log_std_max": 1.0,
    "action_low": -1.0,
    "action_high": 1.0,

    # Behavioral cloning warm start
    "pretrain_samples": 500,
    "pretrain_epochs": 20,
    "pretrain_lr": 1e-3,
    "pretrain_gain": 0.8,            # steering = -gain * heading_error

    # Reward
    "progress_weight": 500.0,        # reward = delta_progress * weight
    "death_penalty": 0.0,            # Added on crash (0 = disabled)
}

# =============================================================================
# DEFAULT TRACK
# =============================================================================
TRACK_CENTERLINE = [
    (200.0, -25.0),
    (550.0, -25.0),
    (875.0, -25.0),
    (1150.0, 300.0),
    (975.0, 650.0),
    (1225.0, 775.0),
    (1300.0, 1025.0),
    (950.0, 1300.0),
    (550.0, 1250.0),
    (450.0, 1075.0),
    (300.0, 1100.0),
    (75.0, 1300.0),
    (-425.0, 1125.0),
    (-475.0, 625.0),
    (-150.0, 600.0),
    (-350.0, 400.0),
    (-50.0, 100.0),
]
