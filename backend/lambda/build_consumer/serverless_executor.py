"""serverless_executor.py — Run Screwdriver builds as AWS CodeBuild projects.

Each Screwdriver job maps to one CodeBuild project ``<jobName>-<jobId>``.
When the launcher for the requested version is not yet in the build bucket,
builds run as a two-step batch (sdinit launcher build, then the main build);
otherwise a single build pulls the launcher from the bucket.

start: create or update the project, start the build (or batch), return the
project ARN. stop: delete the project when pruning, else stop the latest
in-progress build (or batch).
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from aws_clients import _get_client
from build_message import BuildConfig, BuildConfigError
from config import SLS_BUILD_BUCKET, SLS_BUILD_ENCRYPTION_KEY_ALIAS, SLS_EXECUTOR_NAME, logger
from executor_registry import ExecutorError

__all__ = [
    "ServerlessExecutor",
    "get_bucket_name",
    "get_build_spec",
    "get_env_vars",
    "get_project_name",
    "get_region_short_name",
]

SD_INIT_PREFIX = "sdinit-"
MAX_BUILDS_IN_BATCH = 2
CONCURRENT_BUILD_LIMIT = 2
IN_PROGRESS = "IN_PROGRESS"

AWS_REGION_SHORT_NAMES = {
    "north": "n",
    "west": "w",
    "northeast": "ne",
    "east": "e",
    "south": "s",
    "central": "c",
    "southeast": "se",
}

_MAIN_BUILD_SPEC = (
    "version: 0.2\\nphases:\\n  install:\\n    commands:\\n"
    "      - mkdir /opt/sd && cp -r $CODEBUILD_SRC_DIR_sdinit_sdinit/opt/sd/* /opt/sd/\\n"
    "  build:\\n    commands:\\n"
    "      - /opt/sd/launcher_entrypoint.sh /opt/sd/run.sh $TOKEN $API $STORE $TIMEOUT $SDBUILDID $UI"
)

_SINGLE_BUILD_SPEC = (
    "version: 0.2\n"
    "phases:\n"
    "  install:\n"
    "    commands:\n"
    "       - mkdir /opt/sd && cp -r $CODEBUILD_SRC_DIR/opt/sd/* /opt/sd/\n"
    "  build:\n"
    "    commands:\n"
    "       - /opt/sd/launcher_entrypoint.sh /opt/sd/run.sh $TOKEN $API $STORE $TIMEOUT $SDBUILDID $UI\n"
)

_BATCH_BUILD_SPEC = (
    "version: 0.2\n"
    "batch:\n"
    "  fast-fail: false\n"
    "  build-graph:\n"
    "    - identifier: sdinit\n"
    "      env:\n"
    "        type: {env_type}\n"
    "        image: {image}\n"
    "        compute-type: {compute_type}\n"
    "        privileged-mode: false\n"
    "      ignore-failure: false\n"
    "    - identifier: main\n"
    "      buildspec: \"{main}\"\n"
    "      depend-on:\n"
    "        - sdinit\n"
    "artifacts:\n"
    "  base-directory: /opt\n"
    "  files:  \n"
    "    - '/opt/**/*'"
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def get_region_short_name(region: str) -> str:
    """us-west-2 -> usw2."""
    parts = region.split("-")
    if len(parts) != 3 or parts[1] not in AWS_REGION_SHORT_NAMES:
        raise BuildConfigError(f"Unsupported region name: {region!r}")
    return f"{parts[0]}{AWS_REGION_SHORT_NAMES[parts[1]]}{parts[2]}"


def get_bucket_name(region: str, build_region: str, bucket: str = "") -> str:
    """Launcher bucket for the build region (regional copy of the home bucket)."""
    bucket = bucket or SLS_BUILD_BUCKET
    if not build_region or region == build_region:
        return bucket
    regional = bucket.replace(get_region_short_name(region), get_region_short_name(build_region), 1)
    logger.info("Regional Bucket Name: %s", regional)
    return regional


def get_project_name(config: BuildConfig) -> str:
    job_name = config.get_str("jobName")
    if config.get_bool("isPR", default=False):
        job_name = job_name.replace(":", "-", 1)
    project = f"{job_name}-{config.job_id}"
    logger.info("Project name: %s", project)
    return project


def get_build_spec(provider: BuildConfig, launcher_env_type: Optional[str] = None) -> Tuple[str, str]:
    """(batch buildspec, single buildspec)."""
    batch = _BATCH_BUILD_SPEC.format(
        env_type=launcher_env_type or provider.get_str("launcherEnvironmentType"),
        image=provider.get_str("launcherImage"),
        compute_type=provider.get_str("launcherComputeType"),
        main=_MAIN_BUILD_SPEC,
    )
    return batch, _SINGLE_BUILD_SPEC


def get_env_vars(config: BuildConfig) -> List[Dict[str, str]]:
    return [
        {"name": "TOKEN", "value": config.get_str("token")},
        {"name": "API", "value": config.get_str("apiUri")},
        {"name": "STORE", "value": config.get_str("storeUri")},
        {"name": "UI", "value": config.get_str("uiUri")},
        {"name": "TIMEOUT", "value": str(config.get_int("buildTimeout"))},
        {"name": "SDBUILDID", "value": str(config.build_id)},
        {"name": "SD_HAB_ENABLED", "value": "false"},
        {"name": "SD_AWS_INTEGRATION", "value": "true"},
    ]


def _logs_override(provider: BuildConfig) -> Dict[str, Any]:
    extra: Dict[str, Any] = {}
    if provider.get_bool("executorLogs", default=False):
        extra["logsConfigOverride"] = {"cloudWatchLogs": {"status": "ENABLED"}}
    if provider.get_bool("debugSession", default=False):
        extra["debugSessionEnabled"] = True
    return extra


def _batch_config(role: str, build_timeout: int) -> Dict[str, Any]:
    return {
        "serviceRole": role,
        "combineArtifacts": False,
        "restrictions": {"maximumBuildsAllowed": MAX_BUILDS_IN_BATCH},
        "timeoutInMins": build_timeout,
    }


def get_project_request(
    project: str,
    launcher_version: str,
    launcher_update: bool,
    config: BuildConfig,
    bucket: str,
) -> Tuple[Dict[str, Any], str]:
    """(create/update project kwargs, batch buildspec)."""
    provider = config.provider
    environment_type = provider.get_str("environmentType")
    launcher_env_type = "ARM_CONTAINER" if environment_type == "ARM_CONTAINER" else None
    batch_spec, single_spec = get_build_spec(provider, launcher_env_type)

    vpc = provider.get_map("vpc")
    role = provider.get_str("role")
    build_timeout = config.get_int("buildTimeout")
    container = config.get_str("container")

    pull_credentials = provider.get_str("imagePullCredentialsType")
    if container.startswith("aws/codebuild/"):
        pull_credentials = "CODEBUILD"

    request: Dict[str, Any] = {
        "name": project,
        "artifacts": {"type": "NO_ARTIFACTS"},
        "source": {
            "type": "S3",
            "buildspec": single_spec,
            "location": f"{bucket}/{SD_INIT_PREFIX}{launcher_version}",
        },
        "queuedTimeoutInMinutes": provider.get_int("queuedTimeout"),
        "serviceRole": role,
        "timeoutInMinutes": build_timeout,
        "concurrentBuildLimit": CONCURRENT_BUILD_LIMIT,
        "environment": {
            "type": environment_type,
            "image": container,
            "computeType": provider.get_str("computeType"),
            "imagePullCredentialsType": pull_credentials,
            "privilegedMode": provider.get_bool("privilegedMode"),
        },
        "vpcConfig": {
            "vpcId": vpc.get_str("vpcId"),
            "subnets": [str(s) for s in vpc.get_list("subnetIds")],
            "securityGroupIds": [str(s) for s in vpc.get_list("securityGroupIds")],
        },
        "logsConfig": {
            "cloudWatchLogs": {"status": "DISABLED"},
            "s3Logs": {"status": "DISABLED"},
        },
    }
    if SLS_BUILD_ENCRYPTION_KEY_ALIAS:
        request["encryptionKey"] = SLS_BUILD_ENCRYPTION_KEY_ALIAS

    if launcher_update:
        request["source"] = {"type": "NO_SOURCE", "buildspec": batch_spec}
        request["buildBatchConfig"] = _batch_config(role, build_timeout)

    if provider.get_bool("dlc"):
        request["cache"] = {"type": "LOCAL", "modes": ["LOCAL_DOCKER_LAYER_CACHE"]}
        request["environment"]["privilegedMode"] = True

    return request, batch_spec


def get_start_build_batch_request(
    project: str,
    env_vars: List[Dict[str, str]],
    config: BuildConfig,
    batch_spec: str,
    bucket: str,
) -> Dict[str, Any]:
    provider = config.provider
    role = provider.get_str("role")
    request: Dict[str, Any] = {
        "projectName": project,
        "environmentVariablesOverride": env_vars,
        "serviceRoleOverride": role,
        "artifactsOverride": {
            "type": "S3",
            "location": bucket,
            "name": provider.get_str("launcherVersion"),
            "packaging": "ZIP",
            "overrideArtifactName": False,
            "encryptionDisabled": False,
        },
        "buildBatchConfigOverride": _batch_config(role, config.get_int("buildTimeout")),
        "buildspecOverride": batch_spec,
        "sourceTypeOverride": "NO_SOURCE",
    }
    request.update(_logs_override(provider))
    return request


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class ServerlessExecutor:
    """Executor ``sls``: CodeBuild projects in the build region."""

    name = SLS_EXECUTOR_NAME

    def __init__(self, region: str, *, codebuild=None, s3=None):
        self.region = region
        self._codebuild = codebuild
        self._s3 = s3

    @property
    def codebuild(self):
        if self._codebuild is None:
            self._codebuild = _get_client("codebuild", self.region)
        return self._codebuild

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = _get_client("s3", self.region)
        return self._s3

    def _bucket(self, provider: BuildConfig) -> str:
        home_region = provider.get_str("region", required=False, default="") or self.region
        build_region = provider.get_str("buildRegion", required=False, default="")
        bucket = get_bucket_name(home_region, build_region)
        if not bucket:
            raise BuildConfigError("SD_SLS_BUILD_BUCKET is not configured")
        return bucket

    def check_launcher_update(self, launcher_version: str, bucket: str) -> bool:
        """True unless ``sdinit-<version>`` is already in the bucket."""
        try:
            resp = self.s3.list_objects_v2(Bucket=bucket, Prefix=SD_INIT_PREFIX)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Failed to get launcher version: %s", exc)
            return True
        source_id = SD_INIT_PREFIX + launcher_version
        return not any(obj.get("Key") == source_id for obj in resp.get("Contents") or [])

    def _project_exists(self, project: str) -> bool:
        try:
            resp = self.codebuild.batch_get_projects(names=[project])
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Error-BatchGetProjects: %s, creating project", exc)
            return False
        return bool(resp.get("projects"))

    def start(self, config: BuildConfig) -> str:
        provider = config.provider
        launcher_version = provider.get_str("launcherVersion")
        bucket = self._bucket(provider)
        project = get_project_name(config)
        env_vars = get_env_vars(config)

        launcher_update = self.check_launcher_update(launcher_version, bucket)
        logger.info("Launcher Updated: %s", launcher_update)

        request, batch_spec = get_project_request(project, launcher_version, launcher_update, config, bucket)
        try:
            if self._project_exists(project):
                logger.info("Project already exists, updating project")
                resp = self.codebuild.update_project(**request)
            else:
                logger.info("Project does not exist, creating project")
                resp = self.codebuild.create_project(**request)
        except (BotoCoreError, ClientError) as exc:
            raise ExecutorError(f"Error creating or updating project {project}: {exc}") from exc
        project_arn = resp["project"]["arn"]
        logger.info("Project Arn %s", project_arn)

        try:
            if launcher_update:
                logger.info("Starting batch build for project %s", project)
                self.codebuild.start_build_batch(
                    **get_start_build_batch_request(project, env_vars, config, batch_spec, bucket)
                )
            else:
                logger.info("Starting single build for project %s", project)
                self.codebuild.start_build(
                    projectName=project,
                    environmentVariablesOverride=env_vars,
                    serviceRoleOverride=provider.get_str("role"),
                    **_logs_override(provider),
                )
        except (BotoCoreError, ClientError) as exc:
            raise ExecutorError(f"Got error building project {project}: {exc}") from exc

        logger.info("Started build for project %s", project)
        return project_arn

    def stop(self, config: BuildConfig) -> None:
        provider = config.provider
        project = get_project_name(config)

        if provider.get_bool("prune"):
            self._delete_project(project)
            return

        bucket = self._bucket(provider)
        if self.check_launcher_update(provider.get_str("launcherVersion"), bucket):
            self._stop_build_batch(project)
        else:
            self._stop_build(project)

    def _delete_project(self, project: str) -> None:
        try:
            self.codebuild.delete_project(name=project)
        except (BotoCoreError, ClientError) as exc:
            raise ExecutorError(f"Got error deleting project {project}: {exc}") from exc
        logger.info("Deleted project %s", project)

    def _stop_build(self, project: str) -> None:
        try:
            ids = self.codebuild.list_builds_for_project(projectName=project, sortOrder="DESCENDING").get("ids") or []
            logger.info("Build ids for project %s: %s", project, ids)
            if not ids:
                return
            builds = self.codebuild.batch_get_builds(ids=[ids[0]]).get("builds") or []
            if builds and builds[0].get("buildStatus") == IN_PROGRESS:
                resp = self.codebuild.stop_build(id=ids[0])
                logger.info("Stopped build %s for project %s", resp["build"].get("buildNumber"), project)
        except (BotoCoreError, ClientError) as exc:
            raise ExecutorError(f"Got error stopping build for {project}: {exc}") from exc

    def _stop_build_batch(self, project: str) -> None:
        try:
            ids = self.codebuild.list_build_batches_for_project(
                projectName=project, sortOrder="DESCENDING", maxResults=5
            ).get("ids") or []
            logger.info("Build batch ids for project %s: %s", project, ids)
            if not ids:
                return
            batches = self.codebuild.batch_get_build_batches(ids=[ids[0]]).get("buildBatches") or []
            if batches and batches[0].get("buildBatchStatus") == IN_PROGRESS:
                resp = self.codebuild.stop_build_batch(id=ids[0])
                logger.info("Stopped build batch %s for project %s", resp["buildBatch"].get("buildBatchNumber"), project)
        except (BotoCoreError, ClientError) as exc:
            raise ExecutorError(f"Got error stopping build batch for {project}: {exc}") from exc
