"""HTTP routers for KinCare."""
