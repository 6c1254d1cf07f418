import dataclasses
import urllib.parse
from collections.abc import Mapping
from typing import NamedTuple, NewType

# A specific really existing addressable namespace (at least, the one assumed to be so).
# Made as a NewType for stricter type-checking to avoid collisions with other strings.
NamespaceName = NewType('NamespaceName', str)

# A namespace reference usable in the API calls. `None` means cluster-wide API calls.
Namespace = NamespaceName | None


class ObjectKey(NamedTuple):
    """
    A stable identifier of an object: the only thing the reconciler gets.

    Both the custom resources and their owned workloads are namespaced,
    and the workloads are named the same as their owning resources,
    so the same key addresses both of them.
    """
    namespace: NamespaceName
    name: str

    def __str__(self) -> str:
        return f'{self.namespace}/{self.name}'


@dataclasses.dataclass(frozen=True, repr=False)
class Resource:
    """
    A resource kind, as addressed in the API: by its group, version & plural.

    Only these three make the identity of the resource. The other names
    are only informational: for the manifests and for the logs.
    For the core API, the group is an empty string.
    """
    group: str
    version: str
    plural: str
    kind: str | None = dataclasses.field(default=None, compare=False)
    singular: str | None = dataclasses.field(default=None, compare=False)
    shortcuts: frozenset[str] = dataclasses.field(default=frozenset(), compare=False)
    subresources: frozenset[str] = dataclasses.field(default=frozenset(), compare=False)
    namespaced: bool | None = dataclasses.field(default=None, compare=False)

    def __repr__(self) -> str:
        return '.'.join(part for part in [self.plural, self.version, self.group] if part)

    @property
    def api_version(self) -> str:
        return f'{self.group}/{self.version}' if self.group else self.version

    def get_url(
            self,
            *,
            server: str | None = None,
            namespace: Namespace = None,
            name: str | None = None,
            subresource: str | None = None,
            params: Mapping[str, str] | None = None,
    ) -> str:
        """
        Build a URL of the resource's list, or of an object, or of its subresource.

        Without a namespace, the URL is cluster-wide (e.g. for watching
        all namespaces); the cluster-scoped resources accept no namespaces.
        The URL is relative to the server root unless the server is given.
        """
        if subresource is not None and name is None:
            raise ValueError("Subresources can be used only with specific resources by their name.")
        if not self.namespaced and namespace is not None:
            raise ValueError("Specific namespaces are not supported for cluster-scoped resources.")
        if self.namespaced and namespace is None and name is not None:
            raise ValueError("Specific namespaces are required for specific namespaced resources.")

        root = '/api' if self.group == '' else f'/apis/{self.group}'
        scope = f'/namespaces/{namespace}' if namespace is not None else ''
        path = f'{root}/{self.version}{scope}/{self.plural}'
        path += ''.join(f'/{part}' for part in [name, subresource] if part)
        if params:
            path += '?' + urllib.parse.urlencode(params, encoding='utf-8')
        return path if server is None else f"{server.rstrip('/')}{path}"


# The custom resource kind served by this controller.
SCALABLES = Resource(
    'crscale.dev', 'v1', 'scalableresources',
    kind='ScalableResource', singular='scalableresource',
    shortcuts=frozenset({'sr'}),
    subresources=frozenset({'status', 'scale'}),
    namespaced=True,
)

# The owned workload kind, which actually runs the pods.
DEPLOYMENTS = Resource(
    'apps', 'v1', 'deployments',
    kind='Deployment', singular='deployment',
    shortcuts=frozenset({'deploy'}),
    subresources=frozenset({'status', 'scale'}),
    namespaced=True,
)

# For installing the schema of the custom resource.
CRDS = Resource(
    'apiextensions.k8s.io', 'v1', 'customresourcedefinitions',
    kind='CustomResourceDefinition', singular='customresourcedefinition',
    namespaced=False,
)
