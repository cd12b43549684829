# Access Control - Demo Scenarios
# Demo data seeding and permission check scenarios

from .demo_data import load_demo_data
from .test_scenarios import run_scenarios

__all__ = ['load_demo_data', 'run_scenarios']
