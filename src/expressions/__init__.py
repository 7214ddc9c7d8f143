"""Expression analysis for resource graphs.

Detects references embedded in author values, parses the textual
expression form, compiles expressions to CEL for the in-cluster control
loop, and evaluates them directly when graph-driver applies resources
itself.
"""
