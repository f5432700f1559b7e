"""
Reward Policy Package

Provides reward policy and network fee configuration, the read-only
configuration provider, and resolution of the policy that applies to a
documentation event.
"""

from .policy_engine import (
    ConfigProvider,
    NetworkFeeSetting,
    PolicyResolution,
    PolicyResolver,
    RewardPolicy,
    StaticConfigProvider,
)

__all__ = [
    "ConfigProvider",
    "NetworkFeeSetting",
    "PolicyResolution",
    "PolicyResolver",
    "RewardPolicy",
    "StaticConfigProvider",
]
