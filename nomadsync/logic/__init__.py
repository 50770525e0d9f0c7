"""Business logic: the device-side store, processor and monitor, and the
remote endpoint's repository."""
