"""
Communication provider adapters.

Each adapter absorbs one provider's REST API behind CommunicationProvider.
"""
