"""
Test suite for save change detection and versioning.

This package contains tests for the synchronization components:
- DeterministicSlotId generation and consistency
- PathWatcher backends, event translation and polling fallback
- ChangeClassifier debounce, dedup and the restore guard
- LifecycleEventBus fan-out and sequencing
- VersioningEngine capture, retention, restore and failure isolation
"""
