"""
Core lifecycle logic for the operator.

This package holds the decision-making parts of reconciliation:
- Phase state machine for ManagedDatabase and DormantDatabase
- Spec matching between new databases and dormant records
- Lifecycle reconciler and restore orchestrator
- Per-resource locking for the work dispatcher

Import directly from submodules:
# from kubedb_operator.core.reconciler import LifecycleReconciler
# from kubedb_operator.core.matcher import SpecMatcher
"""
