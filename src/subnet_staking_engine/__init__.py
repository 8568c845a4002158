"""Subnet Staking Engine - multi-network subnet discovery and staking transactions."""

__version__ = "0.1.0"
