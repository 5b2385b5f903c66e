"""
Kore Sampler - session retrieval, sampling and transcript assembly for Kore.ai bots.

    from kore_sampler import load_config, sample_sessions

    config = load_config()
    outcome = await sample_sessions(config, anchor, target_count=25)
"""
from .config import KoreConfig, load_config
from .errors import (
    AuthenticationError,
    ConfigurationError,
    InsufficientSessionsError,
    KoreSamplerError,
    RateLimitedError,
    RemoteApiError,
    RequestTimeoutError,
)
from .models import Message, OutcomeCategory, SessionMetadata, SessionWithTranscript, Speaker
from .pipeline import SamplingOutcome, TranscriptPipeline, classify_sessions, fetch_transcripts_for, sample_sessions

__all__ = [
    "KoreConfig",
    "load_config",
    "KoreSamplerError",
    "ConfigurationError",
    "RemoteApiError",
    "AuthenticationError",
    "RateLimitedError",
    "RequestTimeoutError",
    "InsufficientSessionsError",
    "Message",
    "OutcomeCategory",
    "SessionMetadata",
    "SessionWithTranscript",
    "Speaker",
    "SamplingOutcome",
    "TranscriptPipeline",
    "sample_sessions",
    "fetch_transcripts_for",
    "classify_sessions",
]
