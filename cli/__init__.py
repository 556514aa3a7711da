# Policy Decision Point - Command Line Interface
