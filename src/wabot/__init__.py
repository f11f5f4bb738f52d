"""wabot: multi-session WhatsApp auto-reply bot."""

__version__ = "0.1.0"
