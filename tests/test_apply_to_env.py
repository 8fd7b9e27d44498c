from fw_version import VersionDescriptor, apply_to_env


class FakeEnv(dict):
    """Just enough of a PlatformIO SCons environment."""

    def __init__(self):
        super().__init__()
        self.cppdefines = []

    def Append(self, CPPDEFINES=()):
        self.cppdefines.extend(CPPDEFINES)

    def StringifyMacro(self, value):
        return '\\"%s\\"' % value


def test_defines_appended():
    env = FakeEnv()
    apply_to_env(env, VersionDescriptor(2, 5, 10, "deadbee", dirty=True))

    assert env.cppdefines == [
        ("FW_VERSION_MAJOR", 2),
        ("FW_VERSION_MINOR", 5),
        ("FW_VERSION_PATCH", 10),
        ("FW_VERSION_HASH", '\\"deadbee\\"'),
        ("FW_VERSION_DIRTY_INDEX", '\\"+\\"'),
    ]


def test_compact_version_exported():
    env = FakeEnv()
    apply_to_env(env, VersionDescriptor(1, 0, 1, "a1b2c3d"))

    assert env["PIOENV_FW_VERSION"] == "v1.0.1-a1b2c3d"
