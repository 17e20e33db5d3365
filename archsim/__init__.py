"""
archsim: discrete-event simulation of distributed-system architectures.

Plays simulated time forward over a graph of components, injects faults,
propagates their effects through dependencies and reports traces, metrics
and invariant violations.
"""

__version__ = "0.1.0"
