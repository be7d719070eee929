"""Capture side: element tree, caption extraction, dedup and batching."""
from .buffer import CaptionBuffer
from .dom import Document, Element, MutationRecord, MutationSubscription, TextNode
from .extractor import CaptionExtractor
from .platforms import TEAMS, PlatformProfile, get_profile

__all__ = [
    "CaptionBuffer",
    "CaptionExtractor",
    "Document",
    "Element",
    "MutationRecord",
    "MutationSubscription",
    "TextNode",
    "PlatformProfile",
    "TEAMS",
    "get_profile",
]
