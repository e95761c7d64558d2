"""
DevPulse analysis dashboard

A Python application that triggers AI analyses of GitHub repositories,
pull requests and releases on the DevPulse backend and watches them
until they complete.
"""

__version__ = "1.0.0"
__author__ = "DevPulse"
__description__ = "Dashboard for AI-driven PR review, repository analysis and release risk"
