pytest_plugins = [
    "tests.fixtures.relay_fixtures",
]
