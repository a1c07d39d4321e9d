"""
Initial-condition generators for tests and demos.

All generators return a :class:`~octree_gravity.particles.ParticleSet` with
float32 data and accept a ``seed`` for reproducible placement.
"""

from typing import Optional
import numpy as np

from octree_gravity.particles import ParticleSet


def uniform_cube(
    n_particles: int,
    half_size: float = 1.0,
    total_mass: float = 1.0,
    velocity_dispersion: float = 0.0,
    seed: Optional[int] = 42,
) -> ParticleSet:
    """
    Particles uniformly distributed in ``[-half_size, half_size)^3``.

    Parameters
    ----------
    n_particles : int
    half_size : float
    total_mass : float
        Shared equally between particles.
    velocity_dispersion : float
        Standard deviation of isotropic Gaussian velocities.
    seed : int, optional
    """
    rng = np.random.default_rng(seed)
    positions = rng.uniform(-half_size, half_size, size=(n_particles, 3))
    velocities = rng.normal(0.0, velocity_dispersion, size=(n_particles, 3)) if velocity_dispersion > 0 else None
    masses = np.full(n_particles, total_mass / n_particles)
    return ParticleSet(positions, velocities, masses=masses)


def plummer_sphere(
    n_particles: int,
    scale_radius: float = 0.5,
    total_mass: float = 1.0,
    G: float = 3e-4,
    max_radius: float = 3.0,
    seed: Optional[int] = 42,
) -> ParticleSet:
    """
    Plummer sphere in virial equilibrium.

    Radii follow the inverse of the cumulative mass profile,
    ``r = a / sqrt(X^(-2/3) - 1)``, truncated at ``max_radius``. Speeds are
    drawn with the von Neumann rejection of Aarseth, Henon & Wielen (1974)
    against the local escape speed ``sqrt(2 G M) (r^2 + a^2)^(-1/4)``.
    """
    rng = np.random.default_rng(seed)
    a = scale_radius

    radii = np.empty(n_particles)
    filled = 0
    while filled < n_particles:
        x = rng.uniform(1e-6, 1.0, size=n_particles - filled)
        r = a / np.sqrt(x ** (-2.0 / 3.0) - 1.0)
        r = r[r <= max_radius]
        radii[filled:filled + r.size] = r
        filled += r.size

    positions = _random_directions(rng, n_particles) * radii[:, None]

    q = np.empty(n_particles)
    filled = 0
    while filled < n_particles:
        trial = rng.uniform(0.0, 1.0, size=n_particles - filled)
        y = rng.uniform(0.0, 0.1, size=n_particles - filled)
        accepted = trial[y < trial ** 2 * (1.0 - trial ** 2) ** 3.5]
        take = min(accepted.size, n_particles - filled)
        q[filled:filled + take] = accepted[:take]
        filled += take

    v_escape = np.sqrt(2.0 * G * total_mass) * (radii ** 2 + a ** 2) ** -0.25
    velocities = _random_directions(rng, n_particles) * (q * v_escape)[:, None]
    velocities -= velocities.mean(axis=0)

    masses = np.full(n_particles, total_mass / n_particles)
    return ParticleSet(positions, velocities, masses=masses)


def rotating_disc(
    n_particles: int,
    radius: float = 2.0,
    thickness: float = 0.05,
    total_mass: float = 1.0,
    central_mass: float = 0.0,
    G: float = 3e-4,
    seed: Optional[int] = 42,
) -> ParticleSet:
    """
    Thin disc in the x-y plane on circular orbits.

    Surface density is uniform; each particle gets the circular speed of the
    mass enclosed within its radius (disc plus ``central_mass``). The aux
    channel holds the normalised radius, handy for colouring.
    """
    rng = np.random.default_rng(seed)
    r = radius * np.sqrt(rng.uniform(0.0, 1.0, size=n_particles))
    phi = rng.uniform(0.0, 2.0 * np.pi, size=n_particles)
    z = rng.normal(0.0, thickness, size=n_particles)
    positions = np.stack([r * np.cos(phi), r * np.sin(phi), z], axis=1)

    enclosed = central_mass + total_mass * (r / radius) ** 2
    speed = np.sqrt(G * enclosed / np.maximum(r, 1e-6))
    velocities = np.stack([-speed * np.sin(phi), speed * np.cos(phi), np.zeros_like(r)], axis=1)

    masses = np.full(n_particles, total_mass / n_particles)
    return ParticleSet(positions, velocities, masses=masses, aux=r / radius)


def _random_directions(rng: np.random.Generator, n: int) -> np.ndarray:
    """Isotropic unit vectors."""
    cos_theta = rng.uniform(-1.0, 1.0, size=n)
    phi = rng.uniform(0.0, 2.0 * np.pi, size=n)
    sin_theta = np.sqrt(1.0 - cos_theta ** 2)
    return np.stack([sin_theta * np.cos(phi), sin_theta * np.sin(phi), cos_theta], axis=1)
