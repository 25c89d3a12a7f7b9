from .monitor_workflow import MonitorWorkflow, SettlementWorkflow

__all__ = ["MonitorWorkflow", "SettlementWorkflow"]
