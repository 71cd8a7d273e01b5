"""ethconsole: sandboxed contract console with a forkable chain backend."""

__version__ = "0.1.0"
