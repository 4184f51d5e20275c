"""
rdv — UDP rendezvous service and direct peer-to-peer messaging.

Architecture:
    Rendezvous:  central index, assigns peer UUIDs and answers address lookups
    Peer:        registers once, resolves peers through a local discovery
                 cache, then exchanges message envelopes directly over UDP
    Wire:        one JSON envelope per datagram, at most 1024 bytes
"""

__version__ = "0.1.0"

# Wire constants
RDV_DEFAULT_HOST = "127.0.0.1"
RDV_DEFAULT_PORT = 50_000
RDV_MAX_DATAGRAM = 1024  # bytes per envelope

# Peer runtime defaults
LOOKUP_TIMEOUT_SECS = 3.0
REGISTRATION_TIMEOUT_SECS = 3.0
REGISTRATION_ATTEMPTS = 4
REGISTRATION_BACKOFF_SECS = 0.5  # doubled after every failed attempt
DELIVERY_INTERVAL_SECS = 0.25
INBOUND_QUEUE_MAX = 1024

# Rendezvous registry limits
REGISTRY_CAPACITY = 100_000
REGISTRY_TTL_SECS = None  # entries live for the server process lifetime
