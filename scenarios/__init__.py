# Policy Decision Point - Demo Scenarios
# Demo catalog, users and request builders plus the scenario walkthrough

from .demo_data import build_request, demo_catalog, demo_users, load_demo_data
from .test_scenarios import run_scenarios

__all__ = ['build_request', 'demo_catalog', 'demo_users', 'load_demo_data', 'run_scenarios']
