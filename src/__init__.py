"""
ShieldRoute - Confidential Route Optimization

Coordinates the lifecycle of route-optimization requests whose inputs stay
encrypted: intake with a platform fee, homomorphic aggregation, asynchronous
oracle decryption, and stake refunds on failure or timeout.

Core Components:
    - RouteOptimizerService: facade wiring every component under one lock
    - RequestLedger: request, item and result records
    - LifecycleCoordinator: status transitions, callbacks and refunds
    - SettlementLedger: fees, held balance and payouts

Infrastructure:
    - storage: Pluggable snapshot backends (JSON, Memory)
    - monitoring: Metrics, logging, and health endpoints
    - api: Flask blueprints

Usage:
    from route_service import RouteOptimizerService

    service = RouteOptimizerService.from_env()
    request_id = service.create_request(owner, 5, max_distance, capacity, deposit)
"""

__version__ = "0.1.0"
