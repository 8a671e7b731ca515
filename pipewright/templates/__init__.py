"""Starter pipeline descriptions shipped with pipewright."""
