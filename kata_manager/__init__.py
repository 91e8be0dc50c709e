"""Kata Containers lifecycle management for k3s clusters."""

__version__ = "0.1.0"
