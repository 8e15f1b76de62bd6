"""Business logic services for KinCare."""
