"""Wire-protocol models shared by the sidecar engine and its clients."""
