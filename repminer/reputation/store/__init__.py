"""Version storage backends and the oracle's HTTP transport."""
