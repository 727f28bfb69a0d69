"""
Multi-Channel Abstraction Layer.

Provides a common interface for any messaging channel (Telegram, Discord,
Slack, Matrix, etc.) so projected replies remain channel-agnostic.
"""

from chatrelay.agent.channels.base import BaseChannel, ChannelReplyDispatcher, ChannelType

__all__ = ["BaseChannel", "ChannelReplyDispatcher", "ChannelType"]
