"""
Cluster Client Module - the Kubernetes accessors the log engine depends on

Handles:
- Building an API client from kubeconfig text, optionally through a tunnel port
- Namespace / pod / container listing
- Opening cancellable pod log streams
"""
import logging
import math
import threading
from datetime import datetime, timezone
from typing import Iterator, List, Optional

import urllib3
import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

from KLOG.errors import AuthFailure, TransportFailure
from KLOG.models import LogOptions, PodInfo

logger = logging.getLogger(__name__)

# Bytes per read from the log response
STREAM_READ_SIZE = 64 * 1024


def load_kubeconfig(kubeconfig: str, tunnel_port: Optional[int] = None,
                    tls_insecure: bool = False) -> dict:
    """
    Parse kubeconfig YAML and point its first cluster at a local tunnel if given

    Args:
        kubeconfig: kubeconfig document text
        tunnel_port: Local port of the SSH tunnel to the API server
        tls_insecure: Skip TLS verification for every cluster

    Returns:
        kubeconfig as a dict, ready for new_client_from_config_dict
    """
    try:
        config_dict = yaml.safe_load(kubeconfig)
    except yaml.YAMLError as e:
        raise AuthFailure(f"Invalid kubeconfig: {e}") from e
    if not isinstance(config_dict, dict):
        raise AuthFailure("Invalid kubeconfig: not a mapping")

    clusters = config_dict.get("clusters") or []
    if tunnel_port and clusters and clusters[0].get("cluster", {}).get("server"):
        cluster = clusters[0]["cluster"]
        cluster["server"] = f"https://127.0.0.1:{tunnel_port}"
        # The certificate names the real API host, not 127.0.0.1
        cluster["insecure-skip-tls-verify"] = True

    if tls_insecure:
        for entry in clusters:
            entry.setdefault("cluster", {})["insecure-skip-tls-verify"] = True

    return config_dict


def since_seconds(since_time: datetime, now: Optional[datetime] = None) -> int:
    """Whole seconds from since_time until now, never less than 1"""
    now = now or datetime.now(timezone.utc)
    if since_time.tzinfo is None:
        since_time = since_time.replace(tzinfo=timezone.utc)
    return max(1, math.ceil((now - since_time).total_seconds()))


def _translate(error: Exception, action: str) -> Exception:
    if isinstance(error, ApiException) and error.status in (401, 403):
        return AuthFailure(f"{action}: cluster rejected credentials ({error.status} {error.reason})")
    if isinstance(error, ApiException):
        return TransportFailure(f"{action}: {error.status} {error.reason}")
    return TransportFailure(f"{action}: {error}")


class LogStreamHandle:
    """
    Open pod log response

    chunks() yields raw bytes in receipt order until EOF or cancel().
    cancel() may be called from any thread and more than once.
    """

    def __init__(self, response, cancel_event: Optional[threading.Event] = None):
        self._response = response
        self.cancel_event = cancel_event or threading.Event()
        self._released = False
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def chunks(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.stream(STREAM_READ_SIZE, decode_content=True):
                if self.cancel_event.is_set():
                    break
                if chunk:
                    yield chunk
        finally:
            self._release()

    def cancel(self) -> None:
        self.cancel_event.set()
        self._release()

    def _release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        try:
            # Closing the socket unblocks a reader waiting for bytes
            self._response.close()
            self._response.release_conn()
        except Exception:
            logger.debug("Error releasing log response", exc_info=True)


class ClusterClient:
    """Kubernetes API access for one connection"""

    def __init__(self, api_client: k8s_client.ApiClient):
        self.api_client = api_client
        self.core_api = k8s_client.CoreV1Api(api_client)

    @classmethod
    def from_kubeconfig(cls, kubeconfig: str, tunnel_port: Optional[int] = None,
                        tls_insecure: bool = False) -> "ClusterClient":
        config_dict = load_kubeconfig(kubeconfig, tunnel_port, tls_insecure)
        try:
            api_client = k8s_config.new_client_from_config_dict(config_dict)
        except k8s_config.ConfigException as e:
            raise AuthFailure(f"Invalid kubeconfig: {e}") from e
        return cls(api_client)

    def list_namespaces(self) -> List[str]:
        try:
            response = self.core_api.list_namespace()
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _translate(e, "List namespaces") from e
        return [ns.metadata.name for ns in response.items if ns.metadata and ns.metadata.name]

    def list_pods(self, namespace: str) -> List[PodInfo]:
        try:
            response = self.core_api.list_namespaced_pod(namespace=namespace)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _translate(e, f"List pods in {namespace}") from e

        pods = []
        for pod in response.items:
            pods.append(PodInfo(
                name=pod.metadata.name or "",
                status=(pod.status.phase if pod.status and pod.status.phase else "Unknown"),
                containers=[c.name for c in (pod.spec.containers if pod.spec else [])],
                labels=pod.metadata.labels or {},
            ))
        return pods

    def list_containers(self, namespace: str, pod_name: str) -> List[str]:
        try:
            pod = self.core_api.read_namespaced_pod(name=pod_name, namespace=namespace)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _translate(e, f"Read pod {namespace}/{pod_name}") from e
        return [c.name for c in (pod.spec.containers if pod.spec else [])]

    def read_log_stream(self, namespace: str, pod_name: str, container_name: str,
                        options: LogOptions,
                        cancel_event: Optional[threading.Event] = None) -> LogStreamHandle:
        """
        Open a pod log stream

        Args:
            namespace: Pod namespace
            pod_name: Pod name
            container_name: Container inside the pod
            options: follow / since_time / tail_lines
            cancel_event: Event the caller sets to abort the stream

        Returns:
            LogStreamHandle over the open response
        """
        kwargs = {
            "name": pod_name,
            "namespace": namespace,
            "container": container_name,
            "follow": options.follow,
            "timestamps": True,
            "_preload_content": False,
        }
        if options.since_time is not None:
            kwargs["since_seconds"] = since_seconds(options.since_time)
        if options.tail_lines is not None:
            kwargs["tail_lines"] = options.tail_lines

        try:
            response = self.core_api.read_namespaced_pod_log(**kwargs)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _translate(e, f"Open logs for {namespace}/{pod_name}/{container_name}") from e

        return LogStreamHandle(response, cancel_event)

    def close(self) -> None:
        try:
            self.api_client.close()
        except Exception:
            logger.debug("Error closing API client", exc_info=True)
