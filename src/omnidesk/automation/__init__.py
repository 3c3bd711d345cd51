"""Automation engine: triggers, the step-graph executor and the resumption scheduler."""
