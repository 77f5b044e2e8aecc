"""Multi-asset historical price store and conversion engine."""
