"""Twilio carrier integration: outbound calls, TwiML and carrier webhooks."""
