"""
A2A (Agent-to-Agent) Protocol Surface

Wire models, the JSON-RPC 2.0 dispatcher and discovery-document handling
used by the task runtime.
"""

__version__ = "0.1.0"
__protocol_version__ = "0.3.0"
