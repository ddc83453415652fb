"""Direct peer-to-peer chat over a negotiated data channel."""
