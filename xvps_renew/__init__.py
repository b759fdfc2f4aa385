"""Automated XServer free-VPS renewal with an ensemble CAPTCHA solver."""

__version__ = "0.1.0"
