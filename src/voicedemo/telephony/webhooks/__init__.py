"""Carrier (Twilio) webhook endpoints."""
