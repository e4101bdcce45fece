"""Error kinds raised by the dbhost core."""


class DbHostError(Exception):
    """Base class for every error raised by dbhost."""


class UnsupportedEngine(DbHostError):
    def __init__(self, engine: str):
        self.engine = engine
        super().__init__(f"Unsupported database engine: '{engine}'")


class UnsupportedOperation(DbHostError):
    def __init__(self, engine: str, action: str):
        self.engine = engine
        self.action = action
        super().__init__(f"Unsupported operation '{action}' for engine '{engine}'")


class AgentNotReady(DbHostError):
    def __init__(self, instance_id: str, attempts: int):
        self.instance_id = instance_id
        self.attempts = attempts
        super().__init__(
            f"SSM agent on '{instance_id}' not online after {attempts} attempts"
        )


class CommandNotFound(DbHostError):
    def __init__(self, command_id: str, instance_id: str):
        self.command_id = command_id
        self.instance_id = instance_id
        super().__init__(
            f"No invocation of command '{command_id}' on instance '{instance_id}'"
        )


class InvalidTransition(DbHostError):
    def __init__(self, action: str, status: str):
        self.action = action
        self.status = status
        super().__init__(f"Cannot {action} instance in status '{status}'")


class InstanceNotRunning(DbHostError):
    def __init__(self, instance_id: str, status: str):
        self.instance_id = instance_id
        self.status = status
        super().__init__(
            f"Instance '{instance_id}' must be running (current status: '{status}')"
        )


class InstanceNotFound(DbHostError):
    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Instance not found: '{instance_id}'")


class ProviderAPIError(DbHostError):
    """Wraps a failure returned by an AWS API call.

    ``code`` is the AWS error code when the service returned one
    (e.g. ``InvalidInstanceID.NotFound``), otherwise the exception type name.
    """

    def __init__(self, operation: str, code: str, message: str):
        self.operation = operation
        self.code = code
        super().__init__(f"{operation} failed ({code}): {message}")


class NotConfigured(DbHostError):
    pass


class ValidationError(DbHostError, ValueError):
    pass
