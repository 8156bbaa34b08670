GET_WORK_SERVLET = "work/getwork.php"
RESULT_IMAGE_SERVLET = "work/resultimage.php"
WORK_DONE_SERVLET = "work/workdone.php"

# Task JSON field names
JOB_TEST_ID = "Test ID"
JOB_REPLAY = "replay"
JOB_BROWSER = "browser"

SHUTDOWN_RESPONSE = "shutdown"
REPLAY_BROWSER_SUFFIX = "-wpr"

DEFAULT_JOB_TIMEOUT_SECONDS = 900.0
JOB_FINISH_TIMEOUT_SECONDS = 30.0
NO_JOB_PAUSE_SECONDS = 10.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
MAX_RUNS = 1000  # Sanity limit

RESULTS_ZIP_NAME = "results.zip"
RESULTS_ZIP_CONTENT_TYPE = "application/zip"

TIMEOUT_ERROR = "timeout"
NO_DRIVER_ERROR = "Client.on_start_job_run not set"

# Signal names, in increasing order of severity
SIGQUIT = "SIGQUIT"
SIGABRT = "SIGABRT"
SIGTERM = "SIGTERM"
SIGINT = "SIGINT"
SIGNAL_NAMES = [SIGQUIT, SIGABRT, SIGTERM, SIGINT]
