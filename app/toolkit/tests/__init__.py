"""
Tests for the toolkit app.

This package contains test modules for:
- test_services.py: EmailService and ChannelsBroadcaster tests

Usage:
    pytest toolkit/tests/
"""
