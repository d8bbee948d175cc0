"""
Usage metering and plan entitlements for AI features.
"""
