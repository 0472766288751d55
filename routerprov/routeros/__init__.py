"""RouterOS REST gateway and the configuration primitives built on it."""
