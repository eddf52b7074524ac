# Metrics Package
from .flow_metrics import FlowMetricsEngine
from .sprint_metrics import SprintMetricsEngine
from .status import StatusClassifier

__all__ = ['FlowMetricsEngine', 'SprintMetricsEngine', 'StatusClassifier']
