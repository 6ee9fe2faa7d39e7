"""
Robot Guidance Simulator - Guidance Package

This package contains the simulated robot, depth sensor and the vision-guided
correction loop with collision-gated joint jogging.

Modules:
- correction: Core guidance, sensing and motion-safety functionality
- scripts: Startup script
- tests: Unit and integration tests
"""
