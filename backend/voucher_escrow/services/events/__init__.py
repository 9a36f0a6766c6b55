from .publisher import EscrowEvent, EscrowEventType, ReleaseEventPublisher

__all__ = ["EscrowEvent", "EscrowEventType", "ReleaseEventPublisher"]
