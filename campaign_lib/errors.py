#!/usr/bin/env python3
"""
Exception types shared by the weekly campaign scheduler.
"""


class CampaignError(Exception):
    """Base class for campaign scheduler errors"""


class ConfigurationError(CampaignError):
    """Invalid or missing configuration (timezone, schedule, sender identity)"""


class CandidateValidationError(CampaignError):
    """Content provider output is not exactly one candidate per funnel stage"""


class SegmentationError(CampaignError, LookupError):
    """The computed funnel stage is missing from the candidate set"""


class MailTransportError(CampaignError):
    """A single outbound delivery failed"""
