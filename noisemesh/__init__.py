"""Peer-to-peer networking with pluggable transports, opcode-framed messages and an S/Kademlia overlay."""

__version__ = "0.1.0"