"""
Application layer: run orchestration on top of the simulation kernel.
"""
