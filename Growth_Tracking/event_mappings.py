"""
Event Mappings Module

Lookup tables that translate raw behavioral event types into the metric
counters and journey stages used across the growth pipeline.

Event types outside EventType are still stored by the ingestor, they just
don't feed counters and map to the "unknown" journey stage.
"""

from enum import Enum
from typing import Dict, Optional, Union


class EventType(str, Enum):
    PAGE_VIEW = 'page_view'
    SIGNUP_STARTED = 'signup_started'
    USER_SIGNUP = 'user_signup'
    TRIAL_STARTED = 'trial_started'
    SUBSCRIPTION_CREATED = 'subscription_created'
    PURCHASE_COMPLETED = 'purchase_completed'
    EMAIL_OPENED = 'email_opened'
    EMAIL_CLICKED = 'email_clicked'
    REFERRAL_COMPLETED = 'referral_completed'


class MetricType(str, Enum):
    PAGE_VIEWS = 'page_views'
    SIGNUPS = 'signups'
    CONVERSIONS = 'conversions'
    PURCHASES = 'purchases'
    EMAIL_OPENS = 'email_opens'
    EMAIL_CLICKS = 'email_clicks'
    REFERRALS = 'referrals'


class JourneyStage(str, Enum):
    AWARENESS = 'awareness'
    INTEREST = 'interest'
    CONSIDERATION = 'consideration'
    TRIAL = 'trial'
    CUSTOMER = 'customer'
    ADVOCATE = 'advocate'
    UNKNOWN = 'unknown'


# None marks event types that are tracked but never counted
EVENT_METRIC_MAP: Dict[EventType, Optional[MetricType]] = {
    EventType.PAGE_VIEW: MetricType.PAGE_VIEWS,
    EventType.SIGNUP_STARTED: None,
    EventType.USER_SIGNUP: MetricType.SIGNUPS,
    EventType.TRIAL_STARTED: None,
    EventType.SUBSCRIPTION_CREATED: MetricType.CONVERSIONS,
    EventType.PURCHASE_COMPLETED: MetricType.PURCHASES,
    EventType.EMAIL_OPENED: MetricType.EMAIL_OPENS,
    EventType.EMAIL_CLICKED: MetricType.EMAIL_CLICKS,
    EventType.REFERRAL_COMPLETED: MetricType.REFERRALS,
}

EVENT_JOURNEY_MAP: Dict[EventType, JourneyStage] = {
    EventType.PAGE_VIEW: JourneyStage.AWARENESS,
    EventType.SIGNUP_STARTED: JourneyStage.INTEREST,
    EventType.USER_SIGNUP: JourneyStage.CONSIDERATION,
    EventType.TRIAL_STARTED: JourneyStage.TRIAL,
    EventType.SUBSCRIPTION_CREATED: JourneyStage.CUSTOMER,
    EventType.PURCHASE_COMPLETED: JourneyStage.CUSTOMER,
    EventType.EMAIL_OPENED: JourneyStage.UNKNOWN,
    EventType.EMAIL_CLICKED: JourneyStage.UNKNOWN,
    EventType.REFERRAL_COMPLETED: JourneyStage.ADVOCATE,
}


def parse_event_type(event_type: Union[str, EventType, None]) -> Optional[EventType]:
    """Return the EventType member for a raw tag, or None if it isn't a known type."""
    if isinstance(event_type, EventType):
        return event_type
    try:
        return EventType(event_type)
    except ValueError:
        return None


def event_type_to_metric(event_type: Union[str, EventType, None]) -> Optional[MetricType]:
    """
    Map an event type to the metric counter it feeds.

    'page_view' -> MetricType.PAGE_VIEWS
    'signup_started' -> None (tracked, not counted)
    'made_up_event' -> None
    """
    known = parse_event_type(event_type)
    if known is None:
        return None
    return EVENT_METRIC_MAP[known]


def determine_journey_stage(event_type: Union[str, EventType, None]) -> JourneyStage:
    known = parse_event_type(event_type)
    if known is None:
        return JourneyStage.UNKNOWN
    return EVENT_JOURNEY_MAP[known]
