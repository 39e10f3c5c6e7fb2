# Core module - stores, source reading, persistence and the pipeline driver
from .store import TopicStore
from .database import SQLiteTopicStore
from .supabase_store import SupabaseTopicStore, classify_api_error
from .source import TopicSourceReader
from .writer import ResilientWriter, PersistResult, WriteFailure
from .pipeline import (
    CostEstimate,
    PipelineDriver,
    RunReport,
    RunState,
    WindowReport,
    breakdown_by_board,
    build_pipeline,
    create_store,
    estimate_cost,
)

__all__ = [
    'TopicStore',
    'SQLiteTopicStore',
    'SupabaseTopicStore',
    'classify_api_error',
    'TopicSourceReader',
    'ResilientWriter',
    'PersistResult',
    'WriteFailure',
    'CostEstimate',
    'PipelineDriver',
    'RunReport',
    'RunState',
    'WindowReport',
    'breakdown_by_board',
    'build_pipeline',
    'create_store',
    'estimate_cost',
]
