"""Reconciling controller for Pokemon and VirtualMachine custom resources."""
