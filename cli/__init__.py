# Access Control - Command Line Interface
