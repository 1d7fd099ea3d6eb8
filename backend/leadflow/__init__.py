"""leadflow: lead capture, conversion attribution and postback dispatch backend."""
