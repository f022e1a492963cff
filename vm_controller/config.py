"""Configuration settings for the VirtualMachine controller."""

# CRD Settings
POKEMON_GROUP = "pokemon.rs"
POKEMON_VERSION = "v1"
POKEMON_PLURAL = "pokemons"
POKEMON_KIND = "Pokemon"
POKEMON_FINALIZER = "pokemon.pokemon.rs"

VM_GROUP = "codesandbox.io"
VM_VERSION = "v1alpha1"
VM_PLURAL = "virtualmachines"
VM_KIND = "VirtualMachine"
VM_FINALIZER = "vm.codesandbox.io"

# Identity used for status patches and published events
FIELD_MANAGER = "cntrlr"
REPORTER = "doc-controller"

# Child resources
VM_SELECTOR_LABEL = "vm.codesandbox.io/name"
VM_CONTAINER_PORT = 8080
VM_SERVICE_PORT = 80

# Requeue settings
REQUEUE_SECONDS = 300
ERROR_REQUEUE_SECONDS = 300
CONFLICT_REQUEUE_SECONDS = 0

# Watch settings
WATCH_TIMEOUT_SECONDS = 300
WATCH_RETRY_SECONDS = 5
DEFAULT_WORKERS = 4

# Health / metrics endpoint
HEALTH_HOST = "127.0.0.1"
HEALTH_PORT = 3000
METRICS_PREFIX = "doc_controller"
