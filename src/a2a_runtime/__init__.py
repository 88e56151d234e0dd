"""
A2A Runtime: task execution and streaming server

An A2A v0.3.0 protocol server that tracks agent work as stateful tasks,
drives them through the task lifecycle and streams progress to callers
using JSON-RPC 2.0 over HTTP.
"""

from .main import create_app

__all__ = ["create_app"]
