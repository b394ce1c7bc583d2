from burnbot.recovery.reconciler import DriftReport, ReconcileReport, Reconciler

__all__ = ["DriftReport", "ReconcileReport", "Reconciler"]
