"""
Failure taxonomy for Windex.

None of these are fatal to the process. Each is raised where the failure is
detected and caught at the seam that owns the degradation policy, which logs
it and treats the cycle as "no new data".
"""


class WindexError(Exception):
    """Base class for all Windex errors"""


class ProviderFailure(WindexError):
    """A provider raised during enumeration; its result degrades to empty"""

    def __init__(self, plugin_name: str, cause: BaseException):
        super().__init__(f"Provider {plugin_name} failed: {cause}")
        self.plugin_name = plugin_name
        self.cause = cause


class WorkerError(WindexError):
    """Base class for out-of-process worker failures"""


class WorkerNotFoundError(WorkerError):
    """The worker executable does not exist"""


class WorkerSpawnError(WorkerError):
    """The worker process could not be started or fed its request"""


class WorkerTimeoutError(WorkerError):
    """The worker did not send its final marker before the deadline"""


class WorkerDisposedError(WorkerError):
    """The worker client was used after dispose()"""


class ProtocolDecodeError(WorkerError):
    """A single wire line could not be decoded"""

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


class UnroutableResultError(WindexError):
    """A streamed plugin result matched no registered provider"""

    def __init__(self, plugin_name: str):
        super().__init__(f"No provider found for plugin {plugin_name!r}")
        self.plugin_name = plugin_name
