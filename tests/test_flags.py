import pytest

from resticop.flags import Flags, combine


@pytest.mark.parametrize(
    ("first", "second", "expected"),
    [
        ({"keyInFirst": ["valueInFirst"]}, {}, {"keyInFirst": ["valueInFirst"]}),
        ({}, {"keyInSecond": ["valueInSecond"]}, {"keyInSecond": ["valueInSecond"]}),
        (
            {"keyInFirst": ["valueInFirst"]},
            {"keyInSecond": ["valueInSecond"]},
            {"keyInFirst": ["valueInFirst"], "keyInSecond": ["valueInSecond"]},
        ),
        (
            {"keyInBoth": ["valueInFirst"]},
            {"keyInBoth": ["valueInSecond"]},
            {"keyInBoth": ["valueInFirst", "valueInSecond"]},
        ),
        (
            {"keyInBoth": ["valueInBoth"]},
            {"keyInBoth": ["valueInBoth"]},
            {"keyInBoth": ["valueInBoth", "valueInBoth"]},
        ),
        ({"keyInBoth": []}, {"keyInBoth": []}, {"keyInBoth": []}),
        ({"keyInBoth": [""]}, {"keyInBoth": [""]}, {"keyInBoth": ["", ""]}),
    ],
    ids=[
        "GivenEmptySecond",
        "GivenEmptyFirst",
        "GivenNonOverlappingKeys",
        "GivenOverlappingKeys",
        "GivenOverlappingKeysAndValues",
        "GivenOverlappingKeysAndEmptyValues",
        "GivenOverlappingKeysAndEmptyStringValues",
    ],
)
def test_combine(first, second, expected):
    assert combine(Flags(first), Flags(second)) == expected


def test_combine_does_not_modify_inputs():
    first = Flags({"--tag": ["a"]})
    second = Flags({"--tag": ["b"]})
    combined = combine(first, second)
    assert combined == {"--tag": ["a", "b"]}
    assert first == {"--tag": ["a"]}
    assert second == {"--tag": ["b"]}


@pytest.mark.parametrize(
    ("command", "command_args", "flags", "expected"),
    [
        ("", [], {}, []),
        ("command", [], {}, ["command"]),
        (
            "command",
            ["--command-argument", "parameter"],
            {},
            ["command", "--command-argument", "parameter"],
        ),
        ("command", [], {"--flag": []}, ["command", "--flag"]),
        (
            "command",
            ["--command-argument", "parameter"],
            {"--flag": []},
            ["command", "--flag", "--command-argument", "parameter"],
        ),
        (
            "command",
            ["--command-argument", "parameter"],
            {"--flag": ["flag-argument"]},
            ["command", "--flag", "flag-argument", "--command-argument", "parameter"],
        ),
        ("command", [], {"--flag": ["flag-argument"]}, ["command", "--flag", "flag-argument"]),
        ("command", [], {"--flag": [""]}, ["command", "--flag", ""]),
        (
            "command",
            [],
            {"--flag": ["flag-argument1", "flag-argument2"]},
            ["command", "--flag", "flag-argument1", "--flag", "flag-argument2"],
        ),
        (
            "command",
            [],
            {"--flag1": ["flag-argument"], "--flag2": []},
            ["command", "--flag1", "flag-argument", "--flag2"],
        ),
        (
            "command",
            ["--command-argument", "parameter"],
            {"--flag1": ["flag-argument1", "flag-argument2"], "--flag2": [""], "--flag3": []},
            [
                "command",
                "--flag1",
                "flag-argument1",
                "--flag1",
                "flag-argument2",
                "--flag2",
                "",
                "--flag3",
                "--command-argument",
                "parameter",
            ],
        ),
    ],
    ids=[
        "GivenNothing_ExpectEmptyArray",
        "GivenCommand_ExpectJustCommand",
        "GivenCommandWithCommandArgs",
        "GivenCommandWithFlag",
        "GivenCommandWithCommandArgsAndFlag",
        "GivenCommandWithCommandArgsAndFlagWithFlagArgs",
        "GivenCommandWithFlagAndFlagArg",
        "GivenCommandWithFlagAndEmptyFlagArg",
        "GivenCommandWithFlagAndMultipleFlagArgs",
        "GivenCommandWithTwoFlags",
        "GivenCommandWithCommandArgsAndMultipleFlagsWithMultipleFlagArgs",
    ],
)
def test_apply_to_command(command, command_args, flags, expected):
    assert Flags(flags).apply_to_command(command, *command_args) == expected


def test_add_flag_appends_to_existing():
    flags = Flags({"--option": ["a"]})
    flags.add_flag("--option", "b", "c")
    assert flags == {"--option": ["a", "b", "c"]}


def test_add_flag_without_values_adds_bare_flag():
    flags = Flags()
    flags.add_flag("--json")
    assert flags.apply_to_command("backup") == ["backup", "--json"]