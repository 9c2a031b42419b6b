"""Traffic filters, TLS record decryption and packet index files."""

__version__ = "0.1.0"
__all__ = ["filters", "tlsdecrypt", "packetindex"]