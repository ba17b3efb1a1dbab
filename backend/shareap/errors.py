from typing import Optional


class ShareapError(RuntimeError):
    """
    Base for every error the session reports to the operator.

    `code` is a stable snake_case token (same style as the engine's
    RuntimeError messages); `detail` carries tool output when there is any.
    """

    code = "shareap_error"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None):
        self.detail = (detail or "").strip()[:200] or None
        text = message or self.code
        if self.detail:
            text = f"{text} out={self.detail}"
        super().__init__(text)


class ConfigValidationError(ShareapError):
    code = "invalid_config"


class InterfaceCreationError(ShareapError):
    code = "virtual_iface_create_failed"


class SharingSetupError(ShareapError):
    code = "sharing_setup_failed"


class RuleInsertionError(SharingSetupError):
    code = "nat_rule_insert_failed"


class NoAvailableBridgeError(SharingSetupError):
    code = "no_available_bridge"


class LeaseAcquisitionError(SharingSetupError):
    code = "bridge_lease_failed"


class ServiceStartError(ShareapError):
    code = "service_start_failed"


class UnexpectedDaemonExit(ShareapError):
    code = "daemon_exited"

    def __init__(self, name: str, rc: int):
        self.name = name
        self.rc = rc
        super().__init__(f"{name}_exited rc={rc}")


class SessionStateError(ShareapError):
    code = "invalid_phase_transition"


class SessionInterrupted(ShareapError):
    code = "interrupted"

    def __init__(self, sig_name: str):
        self.sig_name = sig_name
        super().__init__(f"interrupted signal={sig_name}")
