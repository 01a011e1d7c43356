"""Lead intake: classify inbound chat messages and route them to agent roles."""

from .classifier import LeadPayload, LeadType, classify, extract
from .router import LeadReceipt, LeadRouter, Route

__all__ = [
    "LeadPayload",
    "LeadReceipt",
    "LeadRouter",
    "LeadType",
    "Route",
    "classify",
    "extract",
]
