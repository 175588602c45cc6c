"""fleetpay - payment allocation and reconciliation for rental-fleet back offices."""

__version__ = "0.3.0"
__author__ = "fleetpay contributors"
