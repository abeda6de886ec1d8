from stagegate.policy.matcher import PolicyVerdict, evaluate, evaluate_all
from stagegate.policy.profile import ActionRequest, CapabilityProfile, CommandPattern, FsScope

__all__ = [
    "ActionRequest",
    "CapabilityProfile",
    "CommandPattern",
    "FsScope",
    "PolicyVerdict",
    "evaluate",
    "evaluate_all",
]
