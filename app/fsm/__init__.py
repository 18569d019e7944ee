"""FSM package for donation lifecycle management."""

from app.fsm.states import DonationStatus, LifecycleEvent, OtpStage, Role

__all__ = ["DonationStatus", "LifecycleEvent", "OtpStage", "Role"]
