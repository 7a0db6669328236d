"""FinOpsBridge policy enforcement and remediation worker."""
