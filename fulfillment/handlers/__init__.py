"""Per-queue fulfillment handlers. Each returns an Outcome."""
