"""Booking lifecycle rules independent of transport and transactions."""

from .booking_state_machine import ALLOWED_TRANSITIONS, BookingStateMachine

__all__ = ["ALLOWED_TRANSITIONS", "BookingStateMachine"]
