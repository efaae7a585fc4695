# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Kubernetes LoadBalancer Services backed by NAVER Cloud load balancers."""

__version__ = "0.1.0"
