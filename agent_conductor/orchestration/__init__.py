"""
Orchestration strategies for Agent Conductor.

This package provides:
- Profile registry and unit-of-work tracking
- Dispatcher strategy (host restricted to delegating to roles)
- Pipeline strategy (fixed role sequence, fail-fast)
- Status projection and session wiring
"""

from .registry import ProfileRegistry

from .tracker import (
    UnitOfWorkTracker,
    ElapsedTicker
)

from .host import (
    AgentHost,
    Capability,
    OrchestrationStrategy,
    SimpleHost
)

from .dispatcher import DispatcherStrategy, DELEGATE_CAPABILITY

from .pipeline import (
    PipelineStrategy,
    PIPELINE_CAPABILITY,
    render_step_instruction
)

from .projector import (
    StatusProjector,
    StatusRow,
    project_pipeline,
    project_units,
    render_rows
)

from .session import (
    OrchestrationSession,
    create_dispatcher_session,
    create_pipeline_session
)

__all__ = [
    # Registry and tracking
    'ProfileRegistry',
    'UnitOfWorkTracker',
    'ElapsedTicker',

    # Host boundary
    'AgentHost',
    'Capability',
    'OrchestrationStrategy',
    'SimpleHost',

    # Strategies
    'DispatcherStrategy',
    'DELEGATE_CAPABILITY',
    'PipelineStrategy',
    'PIPELINE_CAPABILITY',
    'render_step_instruction',

    # Status projection
    'StatusProjector',
    'StatusRow',
    'project_pipeline',
    'project_units',
    'render_rows',

    # Sessions
    'OrchestrationSession',
    'create_dispatcher_session',
    'create_pipeline_session'
]
