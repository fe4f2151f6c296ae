"""Provision an Ubuntu installer VM on Hyper-V."""

__version__ = "0.1.0"
