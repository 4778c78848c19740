"""Remote socket-control endpoint: drives the local socket stack on behalf of a remote test driver."""
