class ProvisioningError(Exception):
    """Base class for every failure the allocation core reports to its callers."""

    code = "PROVISIONING_ERROR"


class SubscriptionNotFound(ProvisioningError):
    """Raised when the subscription to allocate for does not exist, by id or by order."""

    code = "SUBSCRIPTION_NOT_FOUND"

    def __init__(self, subscription_id=None, order_id=None):
        self.subscription_id = subscription_id
        self.order_id = order_id
        if order_id is not None:
            message = f"No subscription found for order {order_id}"
        else:
            message = f"Subscription {subscription_id} not found"
        super().__init__(message)


class AlreadyAssigned(ProvisioningError):
    """Raised when a subscription already holds a port."""

    code = "ALREADY_ASSIGNED"

    def __init__(self, subscription_id, port_id):
        self.subscription_id = subscription_id
        self.port_id = port_id
        super().__init__(
            f"Subscription {subscription_id} already has port {port_id} assigned"
        )


class NoAvailablePorts(ProvisioningError):
    """Raised when no AVAILABLE port can be claimed."""

    code = "NO_AVAILABLE_PORTS"

    def __init__(self, subscription_id):
        self.subscription_id = subscription_id
        super().__init__(f"No available ports for subscription {subscription_id}")


class PortNotAssigned(ProvisioningError):
    """Raised when reassignment or release targets a port that is not ASSIGNED."""

    code = "PORT_NOT_ASSIGNED"

    def __init__(self, port_id, status=None):
        self.port_id = port_id
        self.status = status
        super().__init__(f"Port {port_id} is not assigned (status: {status})")


class PortNotFound(PortNotAssigned):
    """Raised when the referenced port does not exist. Subclasses PortNotAssigned."""

    code = "PORT_NOT_FOUND"

    def __init__(self, port_id):
        ProvisioningError.__init__(self, f"Port {port_id} not found")
        self.port_id = port_id
        self.status = None


class TargetSubscriptionInvalid(ProvisioningError):
    """Raised when a reassignment target is missing, already holds a port, or is the current holder."""

    code = "TARGET_SUBSCRIPTION_INVALID"

    def __init__(self, subscription_id, reason):
        self.subscription_id = subscription_id
        self.reason = reason
        super().__init__(f"Subscription {subscription_id} can not receive the port: {reason}")


class StorageTransient(ProvisioningError):
    """Raised when a commit could not be confirmed (timeout, lock contention). Safe to retry."""

    code = "STORAGE_TRANSIENT"


class StorageFatal(ProvisioningError):
    """Raised on an integrity violation. Must not be retried; needs manual reconciliation."""

    code = "STORAGE_FATAL"


class DuplicatePort(ProvisioningError):
    """Raised when another port already uses the instance URL."""

    code = "DUPLICATE_PORT"

    def __init__(self, instance_url):
        self.instance_url = instance_url
        super().__init__(f"Port with instance URL {instance_url} already exists")


class InvalidPortData(ProvisioningError):
    """Raised when operator-supplied port fields fail validation."""

    code = "INVALID_PORT_DATA"


class InvalidPortStatus(ProvisioningError):
    """Raised when an operator status change would bypass the allocation service."""

    code = "INVALID_PORT_STATUS"

    def __init__(self, port_id, current, requested):
        self.port_id = port_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Port {port_id}: can not change status from {current} to {requested}"
        )
