"""
Core Layer - Configuration, Errors and Cancellation
===================================================

Modules:
    constants: Configuration values and Pydantic settings validation
    exceptions: ParleyError hierarchy
    cancellation: Cooperative cancellation token shared by a send operation
    prompts: Group roster and context compression prompts
"""
