"""Tests for the signal classifiers and state machines in `DiaLoop.agents`."""
