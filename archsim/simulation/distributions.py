"""
Distribution Sampler

Draws a single number from a tagged distribution descriptor:

    {"type": "constant", "value": 5}
    {"type": "uniform", "min": 1, "max": 3}
    {"type": "normal", "mean": 10, "std_dev": 2, "min": 0, "max": 20}
    {"type": "log-normal", "mu": 1.5, "sigma": 0.4}
    {"type": "exponential", "rate": 0.1}
    {"type": "poisson", "lambda": 4}
    {"type": "weibull", "shape": 1.5, "scale": 10}
    {"type": "gamma", "shape": 2, "rate": 0.5}
    {"type": "beta", "alpha": 2, "beta": 5, "min": 0.1, "max": 0.9}
    {"type": "pareto", "shape": 3, "scale": 1}
    {"type": "empirical", "samples": [...], "interpolation": "linear"}
    {"type": "mixture", "components": [{"weight": 1, "distribution": {...}}, ...]}

Bounded normal and beta samples are clipped, never resampled, so every
draw consumes a predictable amount of randomness.
"""

from __future__ import annotations
import math
from typing import Any, Dict, List

from archsim.core.exceptions import ConfigurationError
from .random_source import DeterministicRandom

# Above this mean the Poisson sampler switches to a normal approximation
POISSON_NORMAL_THRESHOLD = 30.0

_REQUIRED: Dict[str, List[str]] = {
    "constant": ["value"],
    "uniform": ["min", "max"],
    "normal": ["mean", "std_dev"],
    "log-normal": ["mu", "sigma"],
    "exponential": ["rate"],
    "poisson": ["lambda"],
    "weibull": ["shape", "scale"],
    "gamma": ["shape", "rate"],
    "beta": ["alpha", "beta"],
    "pareto": ["shape", "scale"],
    "empirical": ["samples"],
    "mixture": ["components"],
}

DISTRIBUTION_TYPES = tuple(_REQUIRED)


def _clip(value: float, config: Dict[str, Any]) -> float:
    lo = config.get("min")
    hi = config.get("max")
    if lo is not None and value < lo:
        value = float(lo)
    if hi is not None and value > hi:
        value = float(hi)
    return value


def validate_distribution(config: Dict[str, Any]) -> None:
    """
    Check a descriptor before the run starts.

    Raises:
        ConfigurationError: on unknown type, missing or out-of-range parameters
    """
    if not isinstance(config, dict):
        raise ConfigurationError(f"Distribution must be a mapping, got {type(config).__name__}")
    dist_type = config.get("type")
    if dist_type not in _REQUIRED:
        raise ConfigurationError(f"Unknown distribution type '{dist_type}'")
    for key in _REQUIRED[dist_type]:
        if key not in config:
            raise ConfigurationError(f"Distribution '{dist_type}' requires '{key}'")

    if dist_type == "uniform" and config["max"] < config["min"]:
        raise ConfigurationError("Uniform distribution requires min <= max")
    if dist_type == "normal" and config["std_dev"] < 0:
        raise ConfigurationError("Normal distribution requires std_dev >= 0")
    if dist_type == "log-normal" and config["sigma"] < 0:
        raise ConfigurationError("Log-normal distribution requires sigma >= 0")
    if dist_type in ("exponential", "gamma") and config["rate"] <= 0:
        raise ConfigurationError(f"{dist_type} distribution requires rate > 0")
    if dist_type == "poisson" and config["lambda"] < 0:
        raise ConfigurationError("Poisson distribution requires lambda >= 0")
    if dist_type in ("weibull", "gamma", "pareto") and config["shape"] <= 0:
        raise ConfigurationError(f"{dist_type} distribution requires shape > 0")
    if dist_type in ("weibull", "pareto") and config["scale"] <= 0:
        raise ConfigurationError(f"{dist_type} distribution requires scale > 0")
    if dist_type == "beta" and (config["alpha"] <= 0 or config["beta"] <= 0):
        raise ConfigurationError("Beta distribution requires alpha > 0 and beta > 0")
    if dist_type == "empirical":
        if not config["samples"]:
            raise ConfigurationError("Empirical distribution requires at least one sample")
        if config.get("interpolation", "linear") not in ("linear", "step"):
            raise ConfigurationError(f"Unknown interpolation '{config.get('interpolation')}'")
    if dist_type == "mixture":
        components = config["components"]
        if not components:
            raise ConfigurationError("Mixture distribution requires at least one component")
        if any(float(c.get("weight", 0.0)) < 0 for c in components):
            raise ConfigurationError("Mixture weights must be non-negative")
        if sum(float(c.get("weight", 0.0)) for c in components) <= 0:
            raise ConfigurationError("Mixture weights must sum to a positive value")
        for comp in components:
            validate_distribution(comp.get("distribution"))


def _poisson(lam: float, source: DeterministicRandom) -> float:
    if lam <= 0:
        return 0.0
    if lam > POISSON_NORMAL_THRESHOLD:
        return float(max(0, round(source.gauss(lam, math.sqrt(lam)))))
    # Knuth
    limit = math.exp(-lam)
    k = 0
    p = source.random()
    while p > limit:
        k += 1
        p *= source.random()
    return float(k)


def _empirical(config: Dict[str, Any], source: DeterministicRandom) -> float:
    values = sorted(float(v) for v in config["samples"])
    n = len(values)
    u = source.random()
    if n == 1:
        return values[0]
    if config.get("interpolation", "linear") == "step":
        return values[min(int(u * n), n - 1)]
    pos = u * (n - 1)
    lo = int(pos)
    hi = min(lo + 1, n - 1)
    frac = pos - lo
    return values[lo] + (values[hi] - values[lo]) * frac


def _mixture(config: Dict[str, Any], source: DeterministicRandom) -> float:
    components = config["components"]
    total = sum(float(c.get("weight", 0.0)) for c in components)
    if total <= 0:
        raise ConfigurationError("Mixture weights must sum to a positive value")
    target = source.random() * total
    cumulative = 0.0
    for comp in components:
        cumulative += float(comp.get("weight", 0.0))
        if target < cumulative:
            return sample(comp["distribution"], source)
    return sample(components[-1]["distribution"], source)


def sample(config: Dict[str, Any], source: DeterministicRandom) -> float:
    """
    Draw one value from ``config`` using ``source``.

    Args:
        config: Tagged distribution descriptor
        source: Random stream to consume

    Returns:
        The sampled value (units are the caller's, usually milliseconds)
    """
    dist_type = config.get("type") if isinstance(config, dict) else None

    if dist_type == "constant":
        return float(config["value"])
    if dist_type == "uniform":
        return source.uniform(float(config["min"]), float(config["max"]))
    if dist_type == "normal":
        return _clip(source.gauss(float(config["mean"]), float(config["std_dev"])), config)
    if dist_type == "log-normal":
        return source.lognormvariate(float(config["mu"]), float(config["sigma"]))
    if dist_type == "exponential":
        return source.expovariate(float(config["rate"]))
    if dist_type == "poisson":
        return _poisson(float(config["lambda"]), source)
    if dist_type == "weibull":
        return source.weibullvariate(float(config["scale"]), float(config["shape"]))
    if dist_type == "gamma":
        return source.gammavariate(float(config["shape"]), 1.0 / float(config["rate"]))
    if dist_type == "beta":
        return _clip(source.betavariate(float(config["alpha"]), float(config["beta"])), config)
    if dist_type == "pareto":
        return float(config["scale"]) * source.paretovariate(float(config["shape"]))
    if dist_type == "empirical":
        return _empirical(config, source)
    if dist_type == "mixture":
        return _mixture(config, source)

    raise ConfigurationError(f"Unknown distribution type '{dist_type}'")


def expected_value(config: Dict[str, Any]) -> float:
    """Analytical mean of a descriptor (used by static analysis)."""
    dist_type = config.get("type")
    if dist_type == "constant":
        return float(config["value"])
    if dist_type == "uniform":
        return (float(config["min"]) + float(config["max"])) / 2.0
    if dist_type == "normal":
        return float(config["mean"])
    if dist_type == "log-normal":
        return math.exp(float(config["mu"]) + float(config["sigma"]) ** 2 / 2.0)
    if dist_type == "exponential":
        return 1.0 / float(config["rate"])
    if dist_type == "poisson":
        return float(config["lambda"])
    if dist_type == "weibull":
        return float(config["scale"]) * math.gamma(1.0 + 1.0 / float(config["shape"]))
    if dist_type == "gamma":
        return float(config["shape"]) / float(config["rate"])
    if dist_type == "beta":
        a, b = float(config["alpha"]), float(config["beta"])
        return a / (a + b)
    if dist_type == "pareto":
        shape = float(config["shape"])
        return math.inf if shape <= 1 else shape * float(config["scale"]) / (shape - 1.0)
    if dist_type == "empirical":
        values = [float(v) for v in config["samples"]]
        return sum(values) / len(values)
    if dist_type == "mixture":
        total = sum(float(c.get("weight", 0.0)) for c in config["components"])
        return sum(float(c.get("weight", 0.0)) / total * expected_value(c["distribution"])
                   for c in config["components"])
    raise ConfigurationError(f"Unknown distribution type '{dist_type}'")
