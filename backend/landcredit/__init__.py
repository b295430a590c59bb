"""Land-Change Credit Engine - claim integrity and verification backend."""
