"""Ring compatibility harness for a mesh-networking router daemon.

Builds two revisions of the daemon, deploys them onto a ring of
emulated nodes (one network namespace each) according to a named
compatibility layout, and polls the nodes on an exponential backoff
schedule until tunnels, routes and payment ledgers converge or a
deadline passes.
"""

__version__ = "0.4.0"
