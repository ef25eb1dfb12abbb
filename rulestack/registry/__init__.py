"""Registry layer: the client contract and its HTTP and git backends.

- ``base``: the ``RegistryClient`` protocol every backend satisfies
- ``http_client``: REST backend over httpx
- ``git_client``: git repository backend with pull-request publishing
- ``factory``: picks the backend from a registry's declared type
"""
