"""
Operations Layer

Business logic that composes database methods into ladder workflows. Operations
modules own transactions, validation and the ladder rules, and keep the Discord
layer free of persistence details.

Architecture:
- Database layer: Pure data access and CRUD operations
- Operations layer: Business logic composition and workflows
- Command layer: Discord integration and user interface

Modules:
- eligibility: Pure challenge eligibility rules
- settlement: Atomic rank swap after a completed match
- ChallengeOperations: Challenge lifecycle state machine
- ProfileOperations: Registration, ghost merge and ladder queries
"""
