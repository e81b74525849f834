# -----------------------------------------------------------------------------
# THE BLUEPRINT - INFRASTRUCTURE TEMPLATE
# -----------------------------------------------------------------------------
# Responsibility: Declare the Azure resources that host the image as an ARM
# deployment template, and check templates before they are handed to the
# provisioning engine.
#
# Resource graph (dependency order):
#   plan -> registry, storage (+ blob container) -> web app
#        -> role assignments (AcrPull, Blob/Queue Data Contributor)
#        -> source-control binding
#
# The template only declares desired state. Create-or-update, RBAC and
# naming conflicts belong to Azure Resource Manager.
# -----------------------------------------------------------------------------

import json
import re
from collections import deque
from pathlib import Path

from rich.console import Console

from src.domain.models import DEFAULT_PORT, TemplateParameters

console = Console()

TEMPLATE_SCHEMA = "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#"
PARAMETERS_SCHEMA = (
    "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#"
)
CONTENT_VERSION = "1.0.0.0"

# Built-in role definitions granted to the web app's managed identity
ROLE_ACR_PULL = "7f951dda-4ed3-4680-a7ca-43fe172d538d"
ROLE_STORAGE_BLOB_DATA_CONTRIBUTOR = "ba92f5b4-2d11-453d-a403-e96b0029c9fe"
ROLE_STORAGE_QUEUE_DATA_CONTRIBUTOR = "974c5e8b-45b9-4653-ba55-5f855dd0fb88"
ROLE_DEFINITIONS = {
    "AcrPull": ROLE_ACR_PULL,
    "Storage Blob Data Contributor": ROLE_STORAGE_BLOB_DATA_CONTRIBUTOR,
    "Storage Queue Data Contributor": ROLE_STORAGE_QUEUE_DATA_CONTRIBUTOR,
}

STORAGE_CONTAINER_NAME = "default"
REGISTRY_SUFFIX = "acr"
STORAGE_SUFFIX = "store"
REGISTRY_NAME_MAX = 50
STORAGE_NAME_MAX = 24
HOSTNAME_SUFFIX = "azurewebsites.net"

REQUIRED_APP_SETTINGS = ("WEBSITES_PORT", "STORAGE_ACCOUNT", "STORAGE_CONTAINER")

# Parameter name -> default ARM value (None: required)
PARAMETER_DEFAULTS = {
    "appName": None,
    "location": "[resourceGroup().location]",
    "sku": "B1",
    "imageTag": "latest",
    "repoUrl": None,
    "branch": "main",
}

T_PLAN = "Microsoft.Web/serverfarms"
T_SITE = "Microsoft.Web/sites"
T_SOURCE_CONTROL = "Microsoft.Web/sites/sourcecontrols"
T_STORAGE = "Microsoft.Storage/storageAccounts"
T_BLOB_CONTAINER = "Microsoft.Storage/storageAccounts/blobServices/containers"
T_REGISTRY = "Microsoft.ContainerRegistry/registries"
T_ROLE_ASSIGNMENT = "Microsoft.Authorization/roleAssignments"

API_VERSIONS = {
    T_PLAN: "2022-09-01",
    T_SITE: "2022-09-01",
    T_SOURCE_CONTROL: "2022-09-01",
    T_STORAGE: "2023-01-01",
    T_BLOB_CONTAINER: "2023-01-01",
    T_REGISTRY: "2023-07-01",
    T_ROLE_ASSIGNMENT: "2022-04-01",
}


class TemplateValidationError(Exception):
    """Raised when a template fails validation."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("Template validation failed: " + "; ".join(problems))
        self.problems = problems


# -----------------------------------------------------------------------------
# LOCAL NAME DERIVATION
# -----------------------------------------------------------------------------
# Mirrors the variables of the template so names can be previewed offline.


def _compact(app_name: str) -> str:
    return app_name.replace("-", "").lower()


def registry_name(app_name: str) -> str:
    return (_compact(app_name) + REGISTRY_SUFFIX)[:REGISTRY_NAME_MAX]


def storage_account_name(app_name: str) -> str:
    return (_compact(app_name) + STORAGE_SUFFIX)[:STORAGE_NAME_MAX]


def registry_login_server(app_name: str) -> str:
    return f"{registry_name(app_name)}.azurecr.io"


def preview_outputs(params: TemplateParameters) -> dict[str, str]:
    """The template outputs as they will resolve for these parameters."""
    return {
        "registryName": registry_name(params.app_name),
        "hostname": f"{params.app_name.lower()}.{HOSTNAME_SUFFIX}",
    }


# -----------------------------------------------------------------------------
# TEMPLATE CONSTRUCTION
# -----------------------------------------------------------------------------


def _resource_id(resource_type: str, *segments: str) -> str:
    return f"[resourceId('{resource_type}', {', '.join(segments)})]"


def _role_assignment(
    scope_type: str, scope_name: str, role_id: str, depends_on: list[str]
) -> dict:
    scope_id = f"resourceId('{scope_type}', {scope_name})"
    site_id = f"resourceId('{T_SITE}', parameters('appName'))"
    return {
        "type": T_ROLE_ASSIGNMENT,
        "apiVersion": API_VERSIONS[T_ROLE_ASSIGNMENT],
        "scope": f"[format('{scope_type}/{{0}}', {scope_name})]",
        "name": f"[guid({scope_id}, {site_id}, '{role_id}')]",
        "dependsOn": depends_on,
        "properties": {
            "roleDefinitionId": (
                f"[subscriptionResourceId('Microsoft.Authorization/roleDefinitions', '{role_id}')]"
            ),
            "principalId": f"[reference({site_id}, '{API_VERSIONS[T_SITE]}', 'full').identity.principalId]",
            "principalType": "ServicePrincipal",
        },
    }


def build_template() -> dict:
    """
    Build the ARM deployment template.

    Returns:
        The template as a JSON-serialisable dict.
    """
    plan_id = _resource_id(T_PLAN, "variables('planName')")
    site_id = _resource_id(T_SITE, "parameters('appName')")
    storage_id = _resource_id(T_STORAGE, "variables('storageAccountName')")
    registry_id = _resource_id(T_REGISTRY, "variables('registryName')")

    parameters = {
        "appName": {
            "type": "string",
            "minLength": 2,
            "maxLength": 60,
            "metadata": {"description": "Web app name; also the image repository name."},
        },
        "location": {
            "type": "string",
            "defaultValue": PARAMETER_DEFAULTS["location"],
            "metadata": {"description": "Region for every resource."},
        },
        "sku": {
            "type": "string",
            "defaultValue": PARAMETER_DEFAULTS["sku"],
            "metadata": {"description": "App Service plan pricing tier."},
        },
        "imageTag": {
            "type": "string",
            "defaultValue": PARAMETER_DEFAULTS["imageTag"],
            "metadata": {"description": "Tag of the container image to run."},
        },
        "repoUrl": {
            "type": "string",
            "metadata": {"description": "Git repository bound to the web app."},
        },
        "branch": {
            "type": "string",
            "defaultValue": PARAMETER_DEFAULTS["branch"],
            "metadata": {"description": "Branch of repoUrl to integrate."},
        },
    }

    variables = {
        "planName": "[concat(parameters('appName'), '-plan')]",
        "registryName": (
            f"[take(concat(toLower(replace(parameters('appName'), '-', '')), "
            f"'{REGISTRY_SUFFIX}'), {REGISTRY_NAME_MAX})]"
        ),
        "storageAccountName": (
            f"[take(concat(toLower(replace(parameters('appName'), '-', '')), "
            f"'{STORAGE_SUFFIX}'), {STORAGE_NAME_MAX})]"
        ),
        "storageContainerName": STORAGE_CONTAINER_NAME,
        "registryLoginServer": "[concat(variables('registryName'), '.azurecr.io')]",
    }

    resources = [
        {
            "type": T_PLAN,
            "apiVersion": API_VERSIONS[T_PLAN],
            "name": "[variables('planName')]",
            "location": "[parameters('location')]",
            "kind": "linux",
            "sku": {"name": "[parameters('sku')]"},
            "properties": {"reserved": True},
        },
        {
            "type": T_STORAGE,
            "apiVersion": API_VERSIONS[T_STORAGE],
            "name": "[variables('storageAccountName')]",
            "location": "[parameters('location')]",
            "kind": "StorageV2",
            "sku": {"name": "Standard_LRS"},
            "properties": {
                "minimumTlsVersion": "TLS1_2",
                "allowBlobPublicAccess": False,
                "supportsHttpsTrafficOnly": True,
            },
        },
        {
            "type": T_BLOB_CONTAINER,
            "apiVersion": API_VERSIONS[T_BLOB_CONTAINER],
            "name": "[concat(variables('storageAccountName'), '/default/', variables('storageContainerName'))]",
            "dependsOn": [storage_id],
            "properties": {"publicAccess": "None"},
        },
        {
            "type": T_REGISTRY,
            "apiVersion": API_VERSIONS[T_REGISTRY],
            "name": "[variables('registryName')]",
            "location": "[parameters('location')]",
            "sku": {"name": "Basic"},
            "properties": {"adminUserEnabled": False},
        },
        {
            "type": T_SITE,
            "apiVersion": API_VERSIONS[T_SITE],
            "name": "[parameters('appName')]",
            "location": "[parameters('location')]",
            "kind": "app,linux,container",
            "identity": {"type": "SystemAssigned"},
            "dependsOn": [plan_id, storage_id, registry_id],
            "properties": {
                "serverFarmId": plan_id,
                "httpsOnly": True,
                "siteConfig": {
                    "linuxFxVersion": (
                        "[concat('DOCKER|', variables('registryLoginServer'), '/', "
                        "toLower(parameters('appName')), ':', parameters('imageTag'))]"
                    ),
                    "acrUseManagedIdentityCreds": True,
                    "alwaysOn": False,
                    "appSettings": [
                        {"name": "WEBSITES_PORT", "value": str(DEFAULT_PORT)},
                        {"name": "STORAGE_ACCOUNT", "value": "[variables('storageAccountName')]"},
                        {
                            "name": "STORAGE_CONTAINER",
                            "value": "[variables('storageContainerName')]",
                        },
                        {
                            "name": "DOCKER_REGISTRY_SERVER_URL",
                            "value": "[concat('https://', variables('registryLoginServer'))]",
                        },
                    ],
                },
            },
        },
        _role_assignment(
            T_REGISTRY, "variables('registryName')", ROLE_ACR_PULL, [site_id, registry_id]
        ),
        _role_assignment(
            T_STORAGE,
            "variables('storageAccountName')",
            ROLE_STORAGE_BLOB_DATA_CONTRIBUTOR,
            [site_id, storage_id],
        ),
        _role_assignment(
            T_STORAGE,
            "variables('storageAccountName')",
            ROLE_STORAGE_QUEUE_DATA_CONTRIBUTOR,
            [site_id, storage_id],
        ),
        {
            "type": T_SOURCE_CONTROL,
            "apiVersion": API_VERSIONS[T_SOURCE_CONTROL],
            "name": "[concat(parameters('appName'), '/web')]",
            "dependsOn": [site_id],
            "properties": {
                "repoUrl": "[parameters('repoUrl')]",
                "branch": "[parameters('branch')]",
                "isManualIntegration": True,
            },
        },
    ]

    outputs = {
        "registryName": {"type": "string", "value": "[variables('registryName')]"},
        "hostname": {
            "type": "string",
            "value": f"[reference({site_id[1:-1]}, '{API_VERSIONS[T_SITE]}').defaultHostName]",
        },
    }

    return {
        "$schema": TEMPLATE_SCHEMA,
        "contentVersion": CONTENT_VERSION,
        "parameters": parameters,
        "variables": variables,
        "resources": resources,
        "outputs": outputs,
    }


def build_parameters(params: TemplateParameters) -> dict:
    """Build the ARM parameters file body; location is omitted when unset."""
    values = {
        "appName": params.app_name,
        "sku": params.sku,
        "imageTag": params.image_tag,
        "repoUrl": params.repo_url,
        "branch": params.branch,
    }
    if params.location:
        values["location"] = params.location

    return {
        "$schema": PARAMETERS_SCHEMA,
        "contentVersion": CONTENT_VERSION,
        "parameters": {name: {"value": value} for name, value in values.items()},
    }


def write_template(directory: Path, params: TemplateParameters) -> tuple[Path, Path]:
    """Write azuredeploy.json and azuredeploy.parameters.json into directory."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    template_path = directory / "azuredeploy.json"
    parameters_path = directory / "azuredeploy.parameters.json"
    template_path.write_text(json.dumps(build_template(), indent=2) + "\n")
    parameters_path.write_text(json.dumps(build_parameters(params), indent=2) + "\n")
    console.print(f"[green][BLUEPRINT] Template written to {template_path}[/green]")
    return template_path, parameters_path


# -----------------------------------------------------------------------------
# VALIDATION
# -----------------------------------------------------------------------------

_RESOURCE_ID = re.compile(r"^\[resourceId\((.*)\)\]$", re.DOTALL)
_LITERAL = re.compile(r"^'(.*)'$", re.DOTALL)
_UUID = re.compile(r"[0-9a-fA-F]{8}-(?:[0-9a-fA-F]{4}-){3}[0-9a-fA-F]{12}")


def _split_top_level(args: str) -> list[str]:
    """Split an ARM argument list on commas outside parentheses and quotes."""
    parts: list[str] = []
    depth = 0
    quoted = False
    current = ""
    for ch in args:
        if ch == "'":
            quoted = not quoted
        elif not quoted and ch == "(":
            depth += 1
        elif not quoted and ch == ")":
            depth -= 1
        elif not quoted and depth == 0 and ch == ",":
            parts.append(current.strip())
            current = ""
            continue
        current += ch
    if current.strip():
        parts.append(current.strip())
    return parts


def _name_segments(name: str) -> tuple[str, ...]:
    """
    Split a resource name into the segments resourceId() would take.

    "[concat(variables('a'), '/default/', variables('b'))]"
        -> ("variables('a')", "'default'", "variables('b')")
    """
    if not (name.startswith("[") and name.endswith("]")):
        return tuple(f"'{piece}'" for piece in name.split("/") if piece)

    expression = name[1:-1].strip()
    if not (expression.startswith("concat(") and expression.endswith(")")):
        return (expression,)

    segments: list[list[str]] = [[]]
    for arg in _split_top_level(expression[len("concat(") : -1]):
        literal = _LITERAL.match(arg)
        if not literal:
            segments[-1].append(arg)
            continue
        for i, piece in enumerate(literal.group(1).split("/")):
            if i > 0:
                segments.append([])
            if piece:
                segments[-1].append(f"'{piece}'")

    return tuple(
        parts[0] if len(parts) == 1 else f"concat({', '.join(parts)})"
        for parts in segments
        if parts
    )


def _resource_key(resource: dict) -> tuple[str, tuple[str, ...]]:
    return resource.get("type", "").lower(), _name_segments(resource.get("name", ""))


def _dependency_key(reference: str) -> tuple[str, tuple[str, ...]] | None:
    match = _RESOURCE_ID.match(reference.strip())
    if not match:
        return None
    args = _split_top_level(match.group(1))
    if not args:
        return None
    type_literal = _LITERAL.match(args[0])
    if not type_literal:
        return None
    return type_literal.group(1).lower(), tuple(args[1:])


def _label(resource: dict) -> str:
    return f"{resource.get('type', '?')}:{resource.get('name', '?')}"


def _dependency_graph(template: dict) -> tuple[list[dict], dict[int, set[int]], list[str]]:
    """Return (resources, index -> dependency indexes, unresolved problems)."""
    resources = list(template.get("resources") or [])
    index = {_resource_key(r): i for i, r in enumerate(resources)}
    by_name = {r.get("name"): i for i, r in enumerate(resources)}

    graph: dict[int, set[int]] = {i: set() for i in range(len(resources))}
    problems: list[str] = []
    for i, resource in enumerate(resources):
        for reference in resource.get("dependsOn") or []:
            key = _dependency_key(reference)
            target = index.get(key) if key else by_name.get(reference)
            if target is None:
                problems.append(f"{_label(resource)} depends on undeclared {reference}")
            else:
                graph[i].add(target)
    return resources, graph, problems


def deployment_order(template: dict) -> list[str]:
    """
    Topologically sort resources by dependsOn.

    Ties keep declaration order, so the result is deterministic.

    Raises:
        TemplateValidationError: On unresolved dependencies or a cycle.
    """
    resources, graph, problems = _dependency_graph(template)
    if problems:
        raise TemplateValidationError(problems)

    pending = {i: set(deps) for i, deps in graph.items()}
    ready = deque(i for i in range(len(resources)) if not pending[i])
    order: list[int] = []
    while ready:
        current = ready.popleft()
        order.append(current)
        released = []
        for i, deps in pending.items():
            if current in deps:
                deps.discard(current)
                if not deps:
                    released.append(i)
        ready.extend(sorted(released))
        ready = deque(sorted(ready))

    if len(order) != len(resources):
        stuck = [_label(resources[i]) for i in range(len(resources)) if i not in order]
        raise TemplateValidationError([f"dependency cycle among: {', '.join(stuck)}"])

    return [_label(resources[i]) for i in order]


def _check_parameters(template: dict) -> list[str]:
    problems = []
    declared = template.get("parameters") or {}
    for name, default in PARAMETER_DEFAULTS.items():
        spec = declared.get(name)
        if spec is None:
            problems.append(f"parameter {name} is not declared")
        elif default is not None and spec.get("defaultValue") != default:
            problems.append(f"parameter {name} default is {spec.get('defaultValue')!r}, expected {default!r}")
    return problems


def _check_roles(resources: list[dict]) -> list[str]:
    problems = []
    known = set(ROLE_DEFINITIONS.values())
    seen = set()
    for resource in resources:
        if resource.get("type", "").lower() != T_ROLE_ASSIGNMENT.lower():
            continue
        role_ref = str((resource.get("properties") or {}).get("roleDefinitionId", ""))
        ids = {m.lower() for m in _UUID.findall(role_ref)}
        matched = ids & known
        if not matched:
            problems.append(f"{_label(resource)} references unknown role definition {role_ref!r}")
        seen |= matched
    for role, role_id in ROLE_DEFINITIONS.items():
        if role_id not in seen:
            problems.append(f"no role assignment grants {role} ({role_id})")
    return problems


def _check_app_settings(resources: list[dict]) -> list[str]:
    sites = [r for r in resources if r.get("type", "").lower() == T_SITE.lower()]
    if len(sites) != 1:
        return [f"expected exactly one web app, found {len(sites)}"]

    site_config = (sites[0].get("properties") or {}).get("siteConfig") or {}
    settings = {s.get("name"): s.get("value") for s in site_config.get("appSettings") or []}
    problems = [f"web app is missing app setting {name}" for name in REQUIRED_APP_SETTINGS if name not in settings]
    port = settings.get("WEBSITES_PORT")
    if port is not None and str(port) != str(DEFAULT_PORT):
        problems.append(f"WEBSITES_PORT is {port!r}, expected {DEFAULT_PORT}")
    return problems


def _check_outputs(template: dict) -> list[str]:
    problems = []
    outputs = template.get("outputs") or {}
    for name in ("registryName", "hostname"):
        output = outputs.get(name)
        if output is None:
            problems.append(f"output {name} is not declared")
            continue
        if output.get("type", "").lower() != "string":
            problems.append(f"output {name} must be a string")
        if not str(output.get("value") or "").strip():
            problems.append(f"output {name} has an empty value")
    return problems


def find_problems(template: dict) -> list[str]:
    """
    Collect every problem in a template.

    Returns:
        Human-readable problems; empty when the template is valid.
    """
    problems: list[str] = []
    if not template.get("$schema"):
        problems.append("$schema is missing")
    if not template.get("contentVersion"):
        problems.append("contentVersion is missing")

    resources = list(template.get("resources") or [])
    problems += _check_parameters(template)
    problems += _check_roles(resources)
    problems += _check_app_settings(resources)
    problems += _check_outputs(template)

    try:
        deployment_order(template)
    except TemplateValidationError as e:
        problems += e.problems

    return problems


def validate_template(template: dict) -> bool:
    """
    Validate a template.

    Raises:
        TemplateValidationError: Listing every problem found.
    """
    problems = find_problems(template)
    if problems:
        for problem in problems:
            console.print(f"[red][BLUEPRINT] {problem}[/red]")
        raise TemplateValidationError(problems)
    console.print("[green][BLUEPRINT] Template valid[/green]")
    return True


def load_template(path: Path) -> dict:
    with open(path) as f:
        return json.load(f)
